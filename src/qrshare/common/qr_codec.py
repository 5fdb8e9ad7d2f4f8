"""
QR payload codec

Serializes a TransferSession into the compact JSON text that goes into the
QR code, and validates/decodes scanned text back into a session.

Payload (version 1.0):
    {"version":"1.0","ip":"192.168.1.50","port":8080,"token":"...",
     "fileName":"report.pdf","fileSize":1048576,"sessionId":"..."}
"""
import io
import re
import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Union

import qrcode

from qrshare import config
from qrshare.common.errors import QRCodeError, QRCodeErrorType
from qrshare.common.session import TransferSession, validate_security_token

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('ip', 'port', 'token', 'fileName', 'fileSize', 'sessionId')

# Four dot-separated groups of 1-3 digits; octet ranges are not checked
_IP_PATTERN = re.compile(r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class QRCodec:
    """Encode sessions to QR text and decode scanned text back to sessions"""

    CURRENT_VERSION = config.QR_VERSION

    def encode(self, session: TransferSession) -> str:
        """
        Build the QR payload for a session.

        Raises:
            QRCodeError: the session is invalid or expired
        """
        if not session.is_valid():
            raise QRCodeError("Invalid session provided for QR generation",
                              QRCodeErrorType.INVALID_SESSION,
                              context={"sessionId": session.session_id})

        payload = {
            'version': self.CURRENT_VERSION,
            'ip': session.ip_address,
            'port': session.port,
            'token': session.security_token,
            'fileName': session.file_name,
            'fileSize': session.file_size,
            'sessionId': session.session_id,
        }
        return json.dumps(payload, separators=(',', ':'))

    def decode(self, payload: str) -> TransferSession:
        """
        Parse and validate scanned QR text.

        The returned session has no file path and is stamped with the local
        scan time; expiry is only authoritative on the serving side.

        Raises:
            QRCodeError: INVALID_FORMAT for malformed data,
                         UNSUPPORTED_VERSION for a version mismatch
        """
        if not payload or not payload.strip():
            raise QRCodeError("QR data string cannot be empty")

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise QRCodeError(f"Failed to parse QR code data: {e}", original=e) from e

        if not isinstance(data, dict):
            raise QRCodeError("QR data must be a JSON object")

        self._validate_version(data)
        self._validate_required_fields(data)
        self._validate_data_types(data)

        return TransferSession(
            session_id=data['sessionId'],
            file_path='',
            file_name=data['fileName'],
            file_size=data['fileSize'],
            ip_address=data['ip'],
            port=data['port'],
            security_token=data['token'],
            created_at=datetime.now(),
        )

    def _validate_version(self, data: Dict[str, Any]):
        if 'version' not in data or data['version'] is None:
            raise QRCodeError("Missing required field: version", field='version')

        version = data['version']
        if version != self.CURRENT_VERSION:
            raise QRCodeError(
                f"Unsupported QR data version: {version}. Expected: {self.CURRENT_VERSION}",
                QRCodeErrorType.UNSUPPORTED_VERSION,
                field='version',
                context={"found": version, "expected": self.CURRENT_VERSION},
            )

    def _validate_required_fields(self, data: Dict[str, Any]):
        for name in REQUIRED_FIELDS:
            if data.get(name) is None:
                raise QRCodeError(f"Missing required field: {name}", field=name)

    def _validate_data_types(self, data: Dict[str, Any]):
        ip = data['ip']
        if not isinstance(ip, str) or not _IP_PATTERN.fullmatch(ip):
            raise QRCodeError("Invalid IP address format", field='ip')

        port = data['port']
        if not _is_int(port) or port <= 0 or port > 65535:
            raise QRCodeError("Invalid port number", field='port')

        if not validate_security_token(data['token']):
            raise QRCodeError("Invalid security token", field='token')

        file_name = data['fileName']
        if not isinstance(file_name, str) or not file_name:
            raise QRCodeError("Invalid file name", field='fileName')

        file_size = data['fileSize']
        if not _is_int(file_size) or file_size < 0:
            raise QRCodeError("Invalid file size", field='fileSize')

        session_id = data['sessionId']
        if not isinstance(session_id, str) or not session_id:
            raise QRCodeError("Invalid session ID", field='sessionId')


def _build_qr(payload: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    return qr


def render_ascii(payload: str) -> str:
    """Render the payload as a QR code made of terminal block characters"""
    out = io.StringIO()
    _build_qr(payload).print_ascii(out=out, invert=True)
    return out.getvalue()


def save_png(payload: str, path: Union[str, Path]) -> Path:
    """Write the payload as a QR code PNG image"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    image = _build_qr(payload).make_image(fill_color="black", back_color="white")
    image.save(str(path))
    logger.info(f"QR code saved to {path}")
    return path
