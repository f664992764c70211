"""Theme and shared console for the codelabel CLI."""

from rich.console import Console
from rich.theme import Theme

# Semantic color theme for consistent UI
CODELABEL_THEME = Theme(
    {
        # Outcomes
        "success": "green",
        "error": "bold red",
        "warning": "#d4a017",
        "info": "cyan",
        # Classification output
        "label": "bold cyan",
        "pattern": "magenta",
        "fallback": "#d4a017",
        "version": "orange1",
        # Proposal states
        "proposed": "#d4a017",
        "approved": "cyan",
        "committed": "green",
        "rejected": "red",
        "expired": "#808080",
        # UI elements
        "header": "bold #a0a0a0",
        "muted": "#808080",
    }
)

# Shared console instance with theme applied
console = Console(theme=CODELABEL_THEME)


def confidence_style(confidence: float | None) -> str:
    """Style name for a confidence or accuracy figure."""
    if confidence is None:
        return "muted"
    if confidence >= 0.8:
        return "success"
    if confidence >= 0.6:
        return "warning"
    return "error"


def format_ratio(value: float | None) -> str:
    """Render an accuracy/confidence, showing None as a dash."""
    return "-" if value is None else f"{value:.0%}"
