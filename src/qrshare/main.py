"""
QR Share - Command Line Entry Point

Send a file to a phone or another computer on the same network by showing a
QR code, or receive one from a scanned QR payload.

Commands:
    qrshare send FILE             Serve FILE and show its QR code
    qrshare receive PAYLOAD       Download from a scanned payload (or @file)
    qrshare config                Show/edit configuration
"""
import sys
import time
import asyncio
import logging
import argparse
from pathlib import Path
from datetime import timedelta

from qrshare import config, __version__
from qrshare.client import TransferClient
from qrshare.server import TransferServer
from qrshare.common.errors import QRShareError, format_error, translate_exception
from qrshare.common.network import NetworkDiscovery
from qrshare.common.progress import TransferOutcome, TransferProgress
from qrshare.common.qr_codec import QRCodec, render_ascii, save_png
from qrshare.common.user_config import ConfigManager, ShareConfig, format_config

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Log to stdout and to the log file in the data directory"""
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]
    try:
        handlers.append(logging.FileHandler(config.get_log_file()))
    except OSError as e:
        print(f"[WARN] File logging disabled: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


class ProgressPrinter:
    """Progress callback that redraws a single console line"""

    # Minimum seconds between redraws
    INTERVAL = 0.5

    def __init__(self, label: str):
        self.label = label[:30] + "..." if len(label) > 33 else label
        self._last_update = 0.0

    def __call__(self, progress: TransferProgress):
        now = time.time()
        if not progress.is_terminal and now - self._last_update < self.INTERVAL:
            return
        self._last_update = now

        sys.stdout.write(f"\r   {progress.get_progress_string()} {self.label}")
        sys.stdout.flush()

        if progress.is_terminal:
            print()


def _fail(error: QRShareError) -> int:
    logger.debug(f"{error!r}")
    print(f"\n[ERROR] {format_error(error, error.message)}")
    return 1


async def _send(server: TransferServer, file_path: Path, png_path=None) -> int:
    session = await server.start(file_path)
    printer = ProgressPrinter(session.file_name)
    unsubscribe = server.progress.subscribe(printer)

    try:
        payload = QRCodec().encode(session)

        print("\n" + "=" * 50)
        print("  QR Share - Sending")
        print("=" * 50)
        print(f"  File:    {session.file_name}")
        print(f"  Size:    {session.file_size} bytes")
        print(f"  Address: {session.base_url}")
        print(f"  Expires: {session.created_at + session.session_timeout:%H:%M:%S}")
        print("=" * 50)
        print(render_ascii(payload))
        print(f"Payload: {payload}\n")

        if png_path:
            saved = save_png(payload, png_path)
            print(f"QR code image written to {saved}")

        print("Waiting for the receiver to scan the code. Press Ctrl+C to stop.\n")
        await server.wait_closed()
    finally:
        await server.stop()
        unsubscribe()

    last = server.progress.latest
    if last is not None and last.outcome is TransferOutcome.COMPLETED:
        print(f"[OK] Sent {session.file_name}")
        return 0
    print(f"[WARN] {session.file_name} was not fully sent")
    return 1


def cmd_send(args):
    """Serve a file until it has been downloaded once"""
    setup_logging(args.verbose)
    user_cfg = ConfigManager().get()

    port_start, port_end = user_cfg.port_range
    port_range = (args.port_start or port_start, args.port_end or port_end)
    server = TransferServer(
        discovery=NetworkDiscovery(ip_address=args.host, port_range=port_range),
        chunk_size=user_cfg.chunk_size,
        session_timeout=timedelta(minutes=user_cfg.session_timeout_minutes),
        idle_timeout=user_cfg.read_timeout,
    )

    try:
        code = asyncio.run(_send(server, Path(args.file), args.png))
    except KeyboardInterrupt:
        print("\nShutting down...")
        code = 130
    except QRShareError as e:
        code = _fail(e)
    sys.exit(code)


def _read_payload(value: str) -> str:
    """A payload argument, or @path to read it from a file"""
    if value.startswith('@'):
        return Path(value[1:]).expanduser().read_text(encoding='utf-8').strip()
    return value.strip()


def _on_retry(attempt: int, error: QRShareError):
    print(f"\n[WARN] Attempt {attempt} failed: {error.user_message} Retrying...")


async def _receive(client: TransferClient, payload: str, output, max_retries: int, retry_delay: float) -> Path:
    session = QRCodec().decode(payload)

    print("\n" + "=" * 50)
    print("  QR Share - Receiving")
    print("=" * 50)
    print(f"  File:   {session.file_name}")
    print(f"  Size:   {session.file_size} bytes")
    print(f"  Sender: {session.base_url}")
    print("=" * 50 + "\n")

    unsubscribe = client.progress.subscribe(ProgressPrinter(session.file_name))
    try:
        return await client.download_file_with_retry(
            session,
            custom_path=output,
            max_retries=max_retries,
            retry_delay=retry_delay,
            on_retry=_on_retry,
        )
    finally:
        unsubscribe()


def cmd_receive(args):
    """Download the file described by a QR payload"""
    setup_logging(args.verbose)
    user_cfg = ConfigManager().get()

    client = TransferClient(
        download_dir=user_cfg.resolved_download_dir(),
        connect_timeout=user_cfg.connect_timeout,
        read_timeout=user_cfg.read_timeout,
        chunk_size=user_cfg.chunk_size,
    )
    max_retries = args.retries if args.retries is not None else user_cfg.max_retries
    retry_delay = args.retry_delay if args.retry_delay is not None else user_cfg.retry_delay

    try:
        payload = _read_payload(args.payload)
        saved = asyncio.run(_receive(client, payload, args.output, max_retries, retry_delay))
    except KeyboardInterrupt:
        print("\nDownload cancelled.")
        sys.exit(130)
    except QRShareError as e:
        sys.exit(_fail(e))
    except OSError as e:
        sys.exit(_fail(translate_exception(e)))

    print(f"[OK] Saved to {saved}")


def cmd_config(args):
    """Show or modify configuration"""
    setup_logging(verbose=False)
    config_mgr = ConfigManager()

    if args.reset:
        config_mgr.reset()
        print("[OK] Configuration reset to defaults.")
    elif args.set:
        key, value = args.set
        if config_mgr.set(key, value):
            print(f"[OK] Set {key} = {getattr(config_mgr.get(), key)}")
        else:
            print(f"[ERROR] Could not set {key} to {value!r}")
            print("\nAvailable keys:")
            for k in ShareConfig().to_dict():
                print(f"  - {k}")
            sys.exit(1)

    print(format_config(config_mgr.get(), config_mgr.config_path))


def main():
    parser = argparse.ArgumentParser(
        prog='qrshare',
        description='QR Share - send files over the local network with a QR code',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  qrshare send report.pdf                     Serve a file and show its QR code
  qrshare send photo.jpg --png qr.png         Also write the QR code as an image
  qrshare receive '{"version":"1.0",...}'     Download from a scanned payload
  qrshare receive @payload.txt -o ~/in.pdf    Payload from a file, custom destination
  qrshare config --set max_retries 5          Change a setting
"""
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Send command
    send_parser = subparsers.add_parser('send', help='Serve a file and display its QR code')
    send_parser.add_argument('file', help='File to send')
    send_parser.add_argument('--host', type=str, help='Address to advertise (default: auto-detect)')
    send_parser.add_argument('--port-start', type=int, help=f'First port to try (default: {config.DEFAULT_PORT_START})')
    send_parser.add_argument('--port-end', type=int, help=f'Last port to try (default: {config.DEFAULT_PORT_END})')
    send_parser.add_argument('--png', type=str, metavar='PATH', help='Also save the QR code as a PNG image')
    send_parser.add_argument('-v', '--verbose', action='store_true', help='Verbose logging')

    # Receive command
    receive_parser = subparsers.add_parser('receive', help='Download a file from a QR payload')
    receive_parser.add_argument('payload', help='QR payload text, or @FILE to read it from a file')
    receive_parser.add_argument('-o', '--output', type=str, help='Save to this path instead of the download folder')
    receive_parser.add_argument('--retries', type=int, help=f'Download attempts (default: {config.MAX_RETRIES})')
    receive_parser.add_argument('--retry-delay', type=float,
                                help=f'Seconds between attempts (default: {config.RETRY_DELAY})')
    receive_parser.add_argument('-v', '--verbose', action='store_true', help='Verbose logging')

    # Config command
    config_parser = subparsers.add_parser('config', help='Show/edit configuration')
    config_parser.add_argument('--show', action='store_true', help='Show current configuration')
    config_parser.add_argument('--reset', action='store_true', help='Reset to default configuration')
    config_parser.add_argument('--set', nargs=2, metavar=('KEY', 'VALUE'), help='Set a configuration value')

    args = parser.parse_args()

    if args.command == 'send':
        cmd_send(args)
    elif args.command == 'receive':
        cmd_receive(args)
    elif args.command == 'config':
        cmd_config(args)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
