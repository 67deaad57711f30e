"""
Themed rich console shared by pipeline output.

Colors follow the workflow TUI palette so step headers, stage tables and gate
panels render consistently.
"""

from rich.console import Console
from rich.theme import Theme

COLORS = {
    "primary": "#D9EAFC",      # Light blue - primary text
    "secondary": "#758B9B",    # Muted blue-gray
    "tertiary": "#94A5CC",     # Medium blue
    "accent1": "#71E4D1",      # Cyan - highlights
    "accent2": "#67CFEE",      # Light cyan
    "accent3": "#BB93DD",      # Purple - gates
    "success": "#71E4D1",
    "warning": "#FFA500",
    "error": "#FF6B6B",
    "info": "#67CFEE",
}

THEME = Theme({
    **COLORS,
    "bold_primary": f"bold {COLORS['primary']}",
    "bold_success": f"bold {COLORS['success']}",
    "bold_error": f"bold {COLORS['error']}",
    "bold_accent2": f"bold {COLORS['accent2']}",
    "bold_accent3": f"bold {COLORS['accent3']}",
})

console = Console(theme=THEME, highlight=False)


def print_success(message: str) -> None:
    console.print(message, style="success")


def print_error(message: str) -> None:
    console.print(message, style="error")


def print_warning(message: str) -> None:
    console.print(message, style="warning")


def print_info(message: str) -> None:
    console.print(message, style="info")
