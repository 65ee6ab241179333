from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from kwalk.core.models.result import RunReport

FormatterFunc = Callable[["RunReport"], Any]

FORMATTERS_REGISTRY: dict[str, FormatterFunc] = {}


def register(
    display_name: Optional[str] = None, *, rich_console: bool = False
) -> Callable[[FormatterFunc], FormatterFunc]:
    """
    Register a function turning a run report into printable output.

    Args:
        display_name (str, optional): The name used by `--formatter`. Defaults to the function name.
        rich_console (bool): The output is a rich renderable (e.g. a Table) rather than plain text.
            Keyword-only, so registrations read `@register(rich_console=True)`.
    """

    def decorator(func: FormatterFunc) -> FormatterFunc:
        name = display_name or func.__name__
        if name in FORMATTERS_REGISTRY:
            raise ValueError(f"Formatter '{name}' is already registered")

        FORMATTERS_REGISTRY[name] = func
        func.__display_name__ = name  # type: ignore
        func.__rich_console__ = rich_console  # type: ignore
        return func

    return decorator


def _load_builtin() -> None:
    from kwalk import formatters as _  # noqa: F401


def find(name: str) -> FormatterFunc:
    """
    Find a formatter by name in the registry.

    Raises:
        ValueError: If a formatter with the given name does not exist.
    """

    _load_builtin()
    try:
        return FORMATTERS_REGISTRY[name]
    except KeyError as e:
        raise ValueError(f"Formatter '{name}' not found. Available formatters: {', '.join(list_available())}") from e


def list_available() -> list[str]:
    _load_builtin()
    return list(FORMATTERS_REGISTRY)


def is_rich(formatter: FormatterFunc) -> bool:
    """Whether the output of the formatter has to be printed through a rich console."""

    return getattr(formatter, "__rich_console__", False)


__all__ = ["register", "find", "list_available", "is_rich"]
