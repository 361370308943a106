"""
Rich Output Utilities
=====================

Terminal output for the lifecycle observer using the Rich library: a themed
console, message helpers, tables, panels and logging integration.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class ObserverColors:
    """Observer color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#F59E0B"    # warm accent
    cyan: str = "#22D3EE"      # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red
    crit: str = "#DC2626"      # critical red


def observer_theme(colors: ObserverColors = ObserverColors()) -> Theme:
    """
    Rich Theme for the observer CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="lo.ok")
    """
    return Theme(
        {
            "lo.border": f"{colors.cyan}",
            "lo.accent": f"bold {colors.accent}",
            "lo.muted": f"{colors.dim}",
            "lo.text": f"{colors.ink}",

            # Status
            "lo.ok": f"bold {colors.ok}",
            "lo.warn": f"bold {colors.warn}",
            "lo.err": f"bold {colors.err}",
            "lo.info": f"{colors.cyan}",

            # Data display
            "lo.key": f"{colors.steel}",
            "lo.value": f"{colors.ink}",
            "lo.number": f"bold {colors.accent}",
            "lo.timestamp": f"{colors.dim}",

            # Alert severities
            "lo.sev.info": f"{colors.cyan}",
            "lo.sev.warning": f"bold {colors.warn}",
            "lo.sev.error": f"bold {colors.err}",
            "lo.sev.critical": f"bold reverse {colors.crit}",

            # Improvement severities
            "lo.sev.low": f"{colors.dim}",
            "lo.sev.medium": f"{colors.warn}",
            "lo.sev.high": f"bold {colors.err}",
            "lo.sev.urgent": f"bold reverse {colors.crit}",

            # Table styling
            "lo.table.header": f"bold {colors.cyan}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "siren": "\U0001F6A8",
    "clock": "\U0001F551",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "siren": "[!!]",
    "clock": "[T]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


def severity_style(severity: str) -> str:
    """Theme style name for an alert or improvement severity."""
    return f"lo.sev.{severity}"


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=observer_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[lo.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[lo.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[lo.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[lo.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[lo.muted]{message}[/]")


def print_header(title: str, style: str = "lo.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Tables & Panels
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "lo.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="lo.key")
    table.add_column("Value", style="lo.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "lo.border",
    header_style: str = "lo.table.header",
) -> Table:
    """Create a styled Rich Table with the observer theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="lo.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    console.print(table)


def print_panel(
    content: Union[str, Text],
    *,
    title: Optional[str] = None,
    subtitle: Optional[str] = None,
    border_style: str = "lo.border",
    padding: tuple = (1, 2),
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        subtitle=f"[lo.muted]{subtitle}[/]" if subtitle else None,
        border_style=border_style,
        padding=padding,
    ))


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging("DEBUG")
        logging.getLogger(__name__).info("Detection started")
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
        force=True,
    )
