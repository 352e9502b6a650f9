"""cargohook - outbound webhook delivery for the transport management system."""

__version__ = "0.1.0"
