"""Rich-based logger with tessera theming.

Attention kernels are quiet by default; the few things worth reporting
(config files loaded, layers described, LSH queries that found no keys)
go through this logger so they read consistently:
- Semantic colors (cyan=info, amber=warning)
- Key-value tables under a subheader
"""
from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.theme import Theme


TESSERA_THEME = Theme(
    {
        "info": "bold #7dcfff",
        "warning": "bold #e0af68",
        "highlight": "bold #bb9af7",
        "muted": "dim #565f89",
        "metric": "#7aa2f7",
        "path": "italic #73daca",
    }
)


class Logger:
    """Unified logging interface with rich console output.

    Wraps Rich Console to provide semantic log levels and structured data
    display with consistent theming.
    """

    def __init__(self) -> None:
        """Initialize with the tessera theme."""
        self.console = Console(theme=TESSERA_THEME)

    # ─────────────────────────────────────────────────────────────────────
    # Basic Logging
    # ─────────────────────────────────────────────────────────────────────

    def info(self, message: str) -> None:
        """Log an informational message (cyan ℹ)."""
        self.console.print(f"[info]ℹ[/info] {message}")

    def warning(self, message: str) -> None:
        """Log a warning message (amber ⚠)."""
        self.console.print(f"[warning]⚠[/warning] {message}")

    # ─────────────────────────────────────────────────────────────────────
    # Structured Output
    # ─────────────────────────────────────────────────────────────────────

    def subheader(self, text: str) -> None:
        """Print a subtle subheader for subsections."""
        self.console.print(f"[muted]──[/muted] [highlight]{text}[/highlight]")

    def key_value(self, data: dict[str, Any], title: str | None = None) -> None:
        """Display key-value pairs in a clean format."""
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="muted")
        table.add_column("Value", style="metric")

        for key, value in data.items():
            table.add_row(f"{key}:", str(value))

        if title:
            self.subheader(title)
        self.console.print(table)


_logger: Logger | None = None


def get_logger() -> Logger:
    """Get or create the singleton Logger instance."""
    global _logger
    if _logger is None:
        _logger = Logger()
    return _logger
