"""
Interactive numbered selection prompt
"""
from typing import Callable, Optional

from ..errors import CancelledError


def select(items: list, prompt: str = "Select", render: Optional[Callable] = None,
           input_fn: Callable = input) -> int:
    """
    Print items as a numbered list and return the chosen index.
    Raises CancelledError on empty list, 'q', EOF or Ctrl-C.
    """
    if not items:
        raise CancelledError("nothing to select from")
    render = render or str
    print()
    for i, item in enumerate(items, 1):
        print(f"  {i:>3}) {render(item)}")
    while True:
        try:
            choice = input_fn(f"{prompt} [1-{len(items)}, q to quit]: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            raise CancelledError("selection cancelled") from None
        if choice in ("q", "quit"):
            raise CancelledError("selection cancelled")
        if choice.isdigit() and 1 <= int(choice) <= len(items):
            return int(choice) - 1
        print(f"  Please enter a number between 1 and {len(items)}, or q.")
