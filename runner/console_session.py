"""
Terminal InteractionSession: prompts on stdin, output on stdout.

Confirmations require typing YES in full; anything else declines.
"""

from typing import Sequence, Optional

from core.interfaces import InteractionSession


class ConsoleSession(InteractionSession):
    """Operator prompts and progress output on the terminal."""

    def __init__(self, input_fn=input, output_fn=print):
        self._input = input_fn
        self._print = output_fn

    def select_mode(self, options: Sequence[str], default: str) -> str:
        self._print("\nAvailable modes:")
        for option in options:
            marker = " (default)" if option == default else ""
            self._print(f"  • {option}{marker}")
        while True:
            choice = self._input(f"\nSelect mode (or press Enter for {default}): ").strip().lower()
            if not choice:
                return default
            if choice in options:
                return choice
            self._print(f"❌ Unknown mode: {choice}")

    def prompt(self, message: str, default: Optional[str] = None) -> str:
        suffix = f" [{default}]" if default is not None else ""
        answer = self._input(f"{message}{suffix}: ").strip()
        if not answer and default is not None:
            return default
        return answer

    def confirm(self, message: str) -> bool:
        self._print("\n" + "=" * 70)
        self._print(f"⚠️  {message}")
        self._print("=" * 70)
        return self._input("Type 'YES' to proceed: ").strip() == "YES"

    def progress(self, message: str) -> None:
        self._print(f"  {message}")

    def display(self, text: str) -> None:
        self._print("\n" + text)
