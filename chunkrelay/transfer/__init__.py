from .cancel import CancelToken
from .pool import run_bounded
from .files import LocalFile
from .upload import UploadEngine, UploadSession, UploadStatus
from .download import DownloadEngine, DownloadState, DownloadStatus, ChecksumResult

__all__ = [
    'CancelToken',
    'run_bounded',
    'LocalFile',
    'UploadEngine',
    'UploadSession',
    'UploadStatus',
    'DownloadEngine',
    'DownloadState',
    'DownloadStatus',
    'ChecksumResult'
]
