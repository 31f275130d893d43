"""
Entry point for the chat client.
"""
from .cli import app


def main():
    """Launch the typer client application.
    
    Commands:
        run: Interactive chat session
        health, users, groups, history: One-shot queries
    """
    app()


if __name__ == "__main__":
    main()
