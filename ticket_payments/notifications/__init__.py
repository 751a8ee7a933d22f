"""Customer notifications."""
from .email import EmailNotifier

__all__ = ["EmailNotifier"]
