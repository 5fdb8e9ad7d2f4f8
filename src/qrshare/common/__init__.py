"""Common modules for QR Share"""
from .session import TransferSession, generate_security_token, validate_security_token
from .progress import TransferProgress, TransferOutcome, ProgressBroadcaster
from .qr_codec import QRCodec
from .network import NetworkDiscovery
from .errors import QRShareError, translate_exception

__all__ = [
    'TransferSession',
    'generate_security_token',
    'validate_security_token',
    'TransferProgress',
    'TransferOutcome',
    'ProgressBroadcaster',
    'QRCodec',
    'NetworkDiscovery',
    'QRShareError',
    'translate_exception',
]
