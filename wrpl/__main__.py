"""Main entrypoint for wrpl, so that `python -m wrpl` runs the CLI."""
import wrpl.cli


def main():
    wrpl.cli.app()


if __name__ == "__main__":
    main()
