import asyncio
import argparse
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from chunkrelay import __version__
from chunkrelay.client import RelayClient
from chunkrelay.config import CHUNK_SIZE_PRESETS_MB, TransferConfig, load_config
from chunkrelay.exceptions import ChunkRelayError
from chunkrelay.integrity.repair import RepairStatus
from chunkrelay.network.discord import DiscordTransport
from chunkrelay.sync.state import JsonFileBlobStore
from chunkrelay.transfer.download import ChecksumResult
from chunkrelay.transfer.upload import UploadSession, UploadStatus
from chunkrelay.utils import format_size, format_time

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('chunkrelay.log')
    ]
)
logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path.home() / '.chunkrelay' / 'uploads.json'


@asynccontextmanager
async def open_client(args, config: TransferConfig):
    """Client bound to Discord and the persisted upload state"""
    transport = DiscordTransport(args.token)
    client = RelayClient(transport, config, JsonFileBlobStore(Path(args.state_file)))
    await client.start()
    try:
        yield client
    finally:
        await client.close()


def report_uploads(client: RelayClient):
    """Log a progress line whenever an upload advances"""
    seen = {}

    def on_change():
        for s in client.uploads.get_sessions():
            key = (len(s.completed_indices), s.status)
            if seen.get(s.id) == key:
                continue
            seen[s.id] = key
            logger.info(
                f"{s.name}: {len(s.completed_indices)}/{s.total_chunks} chunks, "
                f"{format_size(s.bytes_uploaded)}/{format_size(s.size)} "
                f"at {format_size(s.speed)}/s, ETA {format_time(s.etr)} [{s.status.value}]"
            )
    return client.uploads.add_listener(on_change)


def report_downloads(client: RelayClient):
    seen = {}

    def on_change():
        for d in client.downloads.get_downloads():
            key = (len(d.chunks_downloaded), d.status)
            if seen.get(d.session_id) == key:
                continue
            seen[d.session_id] = key
            logger.info(
                f"{d.name}: {len(d.chunks_downloaded)}/{d.total_chunks} chunks, "
                f"{format_size(d.bytes_downloaded)}/{format_size(d.total_bytes)} "
                f"at {format_size(d.speed)}/s, ETA {format_time(d.etr)} [{d.status.value}]"
            )
    return client.downloads.add_listener(on_change)


def upload_outcome(session: UploadSession) -> int:
    if session.status is UploadStatus.COMPLETED:
        logger.info(f"Upload {session.id} complete: {session.name} ({format_size(session.size)})")
        return 0
    logger.error(f"Upload {session.id} ended {session.status.value}: {session.error or 'no error recorded'}")
    logger.info(f"Resume with: chunkrelay resume {session.id} <file>")
    return 1


async def run_upload(args, config: TransferConfig) -> int:
    """Upload a file"""
    async with open_client(args, config) as client:
        report_uploads(client)
        session = await client.upload_file(args.file, args.channel)
        return upload_outcome(session)


async def run_resume(args, config: TransferConfig) -> int:
    """Resume a paused upload"""
    async with open_client(args, config) as client:
        report_uploads(client)
        session = await client.resume_file(args.id, args.file)
        return upload_outcome(session)


async def run_uploads(args, config: TransferConfig) -> int:
    """List resumable uploads from the state file"""
    store = JsonFileBlobStore(Path(args.state_file))
    entries = json.loads(store.load() or "{}")
    if not entries:
        logger.info("No resumable uploads")
        return 0

    for entry in entries.values():
        s = UploadSession.from_state(entry)
        logger.info(
            f"{s.id}  {s.name}  {format_size(s.size)}  "
            f"{len(s.completed_indices)}/{s.total_chunks} chunks  channel {s.channel_id}"
            + (f"  ({s.error})" if s.error else "")
        )
    return 0


async def run_scan(args, config: TransferConfig) -> int:
    """Scan a channel and list the files found"""
    async with open_client(args, config) as client:
        await client.scan(args.channel, args.limit)
        sessions = client.registry.get_sessions(args.channel)
        if not sessions:
            logger.info("No chunked files found")
        for s in sorted(sessions, key=lambda s: s.id, reverse=True):
            state = "complete" if s.is_complete else f"missing {len(s.missing_indices())}"
            uploader = s.uploader.username if s.uploader else "unknown"
            logger.info(
                f"{s.id}  {s.name}  {format_size(s.size)}  "
                f"{len(s.chunks)}/{s.total_chunks} chunks ({state})  by {uploader}"
            )
    return 0


async def run_download(args, config: TransferConfig) -> int:
    """Download a file found in a channel"""
    async with open_client(args, config) as client:
        report_downloads(client)
        await client.scan(args.channel, args.limit)
        path = await client.download_file(args.id, args.output)

        state = client.downloads.get_download(args.id)
        logger.info(f"Saved to {path} (checksum {state.checksum_result.value})")
        return 1 if state.checksum_result is ChecksumResult.FAIL else 0


async def run_verify(args, config: TransferConfig) -> int:
    """Compare a session with a local copy"""
    async with open_client(args, config) as client:
        await client.scan(args.channel, args.limit)
        bad = await client.verify_file(args.id, args.file)
        if not bad:
            logger.info("All chunks match")
            return 0
        logger.warning(f"{len(bad)} bad chunks: {', '.join(str(i + 1) for i in bad)}")
        return 1


async def run_repair(args, config: TransferConfig) -> int:
    """Re-upload the chunks that differ from a local copy"""
    async with open_client(args, config) as client:
        await client.scan(args.channel, args.limit)
        state = await client.repair_file(args.id, args.file)
        if state.status is RepairStatus.FAILED:
            logger.error(f"Repair failed: {state.error}")
            return 1
        logger.info(f"Repaired {state.repaired_chunks}/{state.total_bad_chunks} chunks")
        return 0


COMMANDS = {
    'upload': run_upload,
    'resume': run_resume,
    'uploads': run_uploads,
    'scan': run_scan,
    'download': run_download,
    'verify': run_verify,
    'repair': run_repair,
}


def create_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description=f'chunkrelay v{__version__} - Large file transfer over chat channels',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Upload a file in 49 MB chunks
  chunkrelay upload big.iso --channel 123456789 --chunk-size 49

  # List chunked files in a channel
  chunkrelay scan --channel 123456789

  # Download one of them
  chunkrelay download 1700000000000 --channel 123456789 --output ./downloads

  # Check a session against a local copy and fix corrupt chunks
  chunkrelay repair 1700000000000 big.iso --channel 123456789
        """
    )

    # Common arguments
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--token',
        default=None,
        help='Bot token (default: $CHUNKRELAY_TOKEN)'
    )
    common.add_argument(
        '--config',
        default=None,
        help='YAML config file'
    )
    common.add_argument(
        '--state-file',
        default=str(DEFAULT_STATE_FILE),
        help=f'Resumable upload state (default: {DEFAULT_STATE_FILE})'
    )
    common.add_argument(
        '--chunk-size',
        type=float,
        default=None,
        help=f'Chunk size in MB, presets {", ".join(str(p) for p in CHUNK_SIZE_PRESETS_MB)} (default: 9.5)'
    )
    common.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    common.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output'
    )

    commands = parser.add_subparsers(dest='command', required=True)

    upload = commands.add_parser('upload', parents=[common], help='Upload a file')
    upload.add_argument('file', help='File to upload')
    upload.add_argument('--channel', required=True, help='Destination channel id')

    resume = commands.add_parser('resume', parents=[common], help='Resume a paused upload')
    resume.add_argument('id', type=int, help='Upload id')
    resume.add_argument('file', help='The same file that was being uploaded')

    commands.add_parser('uploads', parents=[common], help='List resumable uploads')

    for name, help_text in (('scan', 'List chunked files in a channel'),
                            ('download', 'Download a chunked file'),
                            ('verify', 'Compare a chunked file with a local copy'),
                            ('repair', 'Replace chunks that differ from a local copy')):
        sub = commands.add_parser(name, parents=[common], help=help_text)
        if name != 'scan':
            sub.add_argument('id', type=int, help='Session id (see scan)')
        if name in ('verify', 'repair'):
            sub.add_argument('file', help='Local reference file')
        sub.add_argument('--channel', required=True, help='Channel id')
        sub.add_argument(
            '--limit',
            type=int,
            default=500,
            help='Messages to scan (default: 500)'
        )
        if name == 'download':
            sub.add_argument(
                '--output',
                default='.',
                help='Output directory or file (default: current directory)'
            )

    return parser


async def main(argv=None) -> int:
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Adjust logging level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    try:
        config = load_config(args.config, chunk_size_mb=args.chunk_size)
        return await COMMANDS[args.command](args, config)
    except KeyboardInterrupt:
        logger.info("\nShutdown requested by user")
        return 130
    except ChunkRelayError as e:
        logger.error(f"{e}", exc_info=args.debug)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    cli()
