"""
Unit tests for qr_codec.py - QR payload encoding and validation
"""
import pytest
import json
from datetime import datetime, timedelta

from qrshare.common.qr_codec import QRCodec, REQUIRED_FIELDS, render_ascii, save_png
from qrshare.common.session import TransferSession, generate_security_token
from qrshare.common.errors import QRCodeError, QRCodeErrorType


@pytest.fixture
def codec() -> QRCodec:
    return QRCodec()


@pytest.fixture
def session() -> TransferSession:
    return TransferSession(
        session_id="session_1700000000000_Xy12Ab34",
        file_path="/home/user/report.pdf",
        file_name="report.pdf",
        file_size=1048576,
        ip_address="192.168.1.50",
        port=8080,
        security_token=generate_security_token(),
    )


def payload_dict(**overrides) -> dict:
    data = {
        "version": "1.0",
        "ip": "192.168.1.50",
        "port": 8080,
        "token": "abcdefghijklmnopqrstuvwxyz012345",
        "fileName": "report.pdf",
        "fileSize": 1048576,
        "sessionId": "session_1700000000000_Xy12Ab34",
    }
    data.update(overrides)
    return data


class TestEncode:
    """Tests for QRCodec.encode"""

    def test_payload_fields(self, codec, session):
        data = json.loads(codec.encode(session))
        assert data == {
            "version": "1.0",
            "ip": "192.168.1.50",
            "port": 8080,
            "token": session.security_token,
            "fileName": "report.pdf",
            "fileSize": 1048576,
            "sessionId": session.session_id,
        }

    def test_payload_is_compact(self, codec, session):
        payload = codec.encode(session)
        assert " " not in payload.replace("report.pdf", "")
        assert payload.startswith('{"version":"1.0","ip":')

    def test_file_path_not_transmitted(self, codec, session):
        assert "/home/user" not in codec.encode(session)

    def test_expired_session_rejected(self, codec, session):
        expired = session.copy_with(created_at=datetime.now() - timedelta(hours=2))
        with pytest.raises(QRCodeError) as exc_info:
            codec.encode(expired)
        assert exc_info.value.kind is QRCodeErrorType.INVALID_SESSION
        assert not exc_info.value.retryable


class TestDecode:
    """Tests for QRCodec.decode"""

    def test_round_trip(self, codec, session):
        decoded = codec.decode(codec.encode(session))

        assert decoded.session_id == session.session_id
        assert decoded.security_token == session.security_token
        assert decoded.file_name == session.file_name
        assert decoded.file_size == session.file_size
        assert decoded.ip_address == session.ip_address
        assert decoded.port == session.port
        assert decoded.file_path == ""
        assert decoded.is_valid()

    def test_decoded_session_stamped_now(self, codec):
        before = datetime.now()
        decoded = codec.decode(json.dumps(payload_dict()))
        assert decoded.created_at >= before

    @pytest.mark.parametrize("payload", ["", "   "])
    def test_empty_payload(self, codec, payload):
        with pytest.raises(QRCodeError, match="cannot be empty"):
            codec.decode(payload)

    def test_not_json(self, codec):
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode("http://example.com/not-a-share")
        assert exc_info.value.kind is QRCodeErrorType.INVALID_FORMAT

    def test_json_array_rejected(self, codec):
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode("[1, 2, 3]")
        assert exc_info.value.kind is QRCodeErrorType.INVALID_FORMAT

    @pytest.mark.parametrize("name", REQUIRED_FIELDS)
    def test_missing_field_is_named(self, codec, name):
        data = payload_dict()
        del data[name]
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode(json.dumps(data))
        assert exc_info.value.kind is QRCodeErrorType.INVALID_FORMAT
        assert exc_info.value.field == name
        assert f"Missing required field: {name}" in str(exc_info.value)

    def test_null_field_counts_as_missing(self, codec):
        with pytest.raises(QRCodeError, match="Missing required field: token"):
            codec.decode(json.dumps(payload_dict(token=None)))

    def test_missing_version(self, codec):
        data = payload_dict()
        del data["version"]
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode(json.dumps(data))
        assert exc_info.value.field == "version"
        assert exc_info.value.kind is QRCodeErrorType.INVALID_FORMAT

    def test_version_mismatch_is_distinct(self, codec):
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode(json.dumps(payload_dict(version="2.0")))
        assert exc_info.value.kind is QRCodeErrorType.UNSUPPORTED_VERSION
        assert "2.0" in str(exc_info.value)

    @pytest.mark.parametrize("field,value", [
        ("ip", "not-an-ip"),
        ("ip", "192.168.1"),
        ("ip", 19216811),
        ("ip", "192.168.1.50\n"),
        ("ip", "\u0661\u0669\u0662.\u0661\u0666\u0668.1.50"),
        ("port", 0),
        ("port", 65536),
        ("port", "8080"),
        ("port", True),
        ("token", "short"),
        ("token", "a" * 20 + "!" * 5),
        ("token", "A" * 32 + "\n"),
        ("fileName", ""),
        ("fileName", 42),
        ("fileSize", -1),
        ("fileSize", "10"),
        ("sessionId", ""),
    ])
    def test_invalid_field_values(self, codec, field, value):
        with pytest.raises(QRCodeError) as exc_info:
            codec.decode(json.dumps(payload_dict(**{field: value})))
        assert exc_info.value.field == field

    def test_zero_size_file_allowed(self, codec):
        assert codec.decode(json.dumps(payload_dict(fileSize=0))).file_size == 0

    def test_extra_fields_ignored(self, codec):
        decoded = codec.decode(json.dumps(payload_dict(extra="ignored")))
        assert decoded.file_name == "report.pdf"


class TestRendering:
    """Tests for QR image output"""

    def test_render_ascii(self):
        text = render_ascii(json.dumps(payload_dict()))
        lines = text.splitlines()
        assert len(lines) > 10
        assert any("█" in line or "▀" in line or "▄" in line for line in lines)

    def test_save_png(self, temp_dir):
        path = save_png(json.dumps(payload_dict()), temp_dir / "qr" / "share.png")
        assert path.exists()
        assert path.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
