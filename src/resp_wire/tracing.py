"""
Tracing Hook

A tracer opens one span per command (or per pipeline flush). Spans are
context managers; the client marks them errored before re-raising.
"""

from typing import Any, Optional, Protocol


class Span(Protocol):
    def set_tag(self, tag: Any) -> None:
        ...

    def set_error(self, error: BaseException, tag: Any = None) -> None:
        ...

    def __enter__(self) -> "Span":
        ...

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        ...


class Tracer(Protocol):
    def new_span(self, name: str, tag: Any = None) -> Span:
        ...


class NullSpan:
    """Span that records nothing"""

    def set_tag(self, tag: Any) -> None:
        pass

    def set_error(self, error: BaseException, tag: Any = None) -> None:
        pass

    def __enter__(self) -> "NullSpan":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class NullTracer:
    def new_span(self, name: str, tag: Any = None) -> NullSpan:
        return NullSpan()


# Commands whose first argument is a sub-command worth naming in the span
SUBCOMMAND_COMMANDS = ("CLUSTER", "XINFO", "XGROUP", "XREADGROUP")


def span_name(client_name: str, command: str, args: tuple) -> str:
    """`redis:{client}:{command}`, with `-{subcommand}` for compound commands"""
    action = command
    if command.upper() in SUBCOMMAND_COMMANDS and args:
        action = f"{command}-{args[0]}"
    return f"redis:{client_name}:{action}"
