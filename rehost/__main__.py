"""Main entry point for the rehost CLI."""

from rehost.cli.click_app import cli


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
