"""ANSI color codes and emoji helpers for deployer logging."""

ANSI_RESET = "\033[0m"
ANSI_BOLD = "\033[1m"
ANSI_DIM = "\033[2m"

ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_YELLOW = "\033[33m"
ANSI_CYAN = "\033[36m"

EMOJI_SUCCESS = "✅"
EMOJI_ERROR = "❌"
EMOJI_WARNING = "⚠️"
EMOJI_INFO = "ℹ️"
EMOJI_ROCKET = "🚀"
EMOJI_COIN = "💰"
EMOJI_KEY = "🔑"
EMOJI_STOPWATCH = "⏱️"
EMOJI_BLOCK = "🧱"
EMOJI_NETWORK = "🌐"


def style(text: str, color: str = "", bold: bool = False, emoji: str = "") -> str:
    """Style text with ANSI codes and optional emoji."""
    parts = []
    if emoji:
        parts.append(emoji)
    if bold:
        parts.append(ANSI_BOLD)
    if color:
        parts.append(color)
    parts.append(text)
    parts.append(ANSI_RESET)
    return " ".join(parts)


def tag(name: str, color: str = ANSI_CYAN) -> str:
    """Bold bracketed component tag, e.g. ``[STATE SYNC]``."""
    return f"{ANSI_BOLD}{color}[{name}]{ANSI_RESET}"


__all__ = [
    "ANSI_RESET", "ANSI_BOLD", "ANSI_DIM",
    "ANSI_RED", "ANSI_GREEN", "ANSI_YELLOW", "ANSI_CYAN",
    "EMOJI_SUCCESS", "EMOJI_ERROR", "EMOJI_WARNING", "EMOJI_INFO",
    "EMOJI_ROCKET", "EMOJI_COIN", "EMOJI_KEY",
    "EMOJI_STOPWATCH", "EMOJI_BLOCK", "EMOJI_NETWORK",
    "style", "tag",
]
