"""Host-side loader, boot ROM protocol and factory test tools for MT6260-family boards."""

__version__ = "0.1.0"
__all__ = ["__version__"]