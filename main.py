"""Command line entry for the PropertyX advisor chat."""

from cli.chat import main as run_chat


def main() -> None:
    """Run the interactive advisor session."""
    run_chat()


if __name__ == "__main__":
    main()
