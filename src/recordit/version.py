"""Version information for recordit."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
