"""
chunkrelay - Large file transfer over chat channels
Splits files into attachment-sized chunks, finds them again, verifies
and repairs them, and reassembles the original
"""

__version__ = "1.0.0"

from .config import TransferConfig, load_config
from .client import RelayClient

__all__ = [
    '__version__',
    'TransferConfig',
    'load_config',
    'RelayClient'
]
