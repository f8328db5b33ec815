from .format import format_size, format_time

__all__ = ['format_size', 'format_time']
