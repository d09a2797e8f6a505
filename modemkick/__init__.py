"""Power-cycle ModemManager modems stuck in an idle/denied registration state."""

__version__ = "1.0.0"
