from .client import RelayClient

__all__ = ['RelayClient']
