"""Raw server status probe.

Sends the handshake + status-request pair and reads back the server's
status JSON to learn its advertised version name:

    handshake   = [len, 0x00, 0x00, hostLen, host..., portHi, portLo, 0x01]
    request     = [0x01, 0x00]
    response    = [len, 0x00, jsonLen, json...]

Length fields use the variable-length integer encoding (7 bits per byte,
high bit = continuation). For values below 128 that is the same single
byte a fixed one-byte length would produce, and it keeps hosts and
status documents longer than that representable.
"""
from __future__ import annotations

import asyncio
import json
import logging

from .errors import ProbeTimeoutError, ProtocolError, TransportError

logger = logging.getLogger(__name__)

HANDSHAKE_PACKET_ID = 0x00
STATUS_PACKET_ID = 0x00
QUERY_PROTOCOL_VERSION = 0x00
NEXT_STATE_STATUS = 0x01
STATUS_REQUEST = bytes([0x01, STATUS_PACKET_ID])

_VARINT_MAX_BYTES = 5


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"varint must be non-negative, got {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint at *offset*. Returns (value, next_offset)."""
    result = 0
    for i in range(_VARINT_MAX_BYTES):
        if offset + i >= len(data):
            raise ProtocolError("Truncated varint")
        byte = data[offset + i]
        result |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return result, offset + i + 1
    raise ProtocolError("Varint too long")


def frame(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


def build_handshake(host: str, port: int) -> bytes:
    host_bytes = host.encode("utf-8")
    payload = (
        bytes([HANDSHAKE_PACKET_ID, QUERY_PROTOCOL_VERSION])
        + encode_varint(len(host_bytes))
        + host_bytes
        + bytes([(port >> 8) & 0xFF, port & 0xFF, NEXT_STATE_STATUS])
    )
    return frame(payload)


def parse_status_payload(payload: bytes) -> str:
    """Extract ``version.name`` from a status packet body (after the length)."""
    packet_id, offset = decode_varint(payload)
    if packet_id != STATUS_PACKET_ID:
        raise ProtocolError(f"Unexpected packet id 0x{packet_id:02x}")
    json_len, offset = decode_varint(payload, offset)
    raw = payload[offset:offset + json_len]
    if len(raw) < json_len:
        raise ProtocolError(
            f"Status JSON truncated: expected {json_len} bytes, got {len(raw)}"
        )
    try:
        info = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Invalid status JSON: {exc}") from exc
    version = info.get("version") if isinstance(info, dict) else None
    name = version.get("name") if isinstance(version, dict) else None
    if not isinstance(name, str) or not name:
        raise ProtocolError("Status JSON has no version.name")
    return name


def parse_status_response(data: bytes) -> str:
    """Parse a complete response frame, outer length included."""
    length, offset = decode_varint(data)
    payload = data[offset:offset + length]
    if len(payload) < length:
        raise ProtocolError(
            f"Response frame truncated: expected {length} bytes, got {len(payload)}"
        )
    return parse_status_payload(payload)


async def _read_varint(reader: asyncio.StreamReader) -> int:
    result = 0
    for i in range(_VARINT_MAX_BYTES):
        byte = (await reader.readexactly(1))[0]
        result |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return result
    raise ProtocolError("Varint too long")


async def _probe(host: str, port: int) -> str:
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise TransportError(host, port, str(exc)) from exc

    try:
        writer.write(build_handshake(host, port))
        writer.write(STATUS_REQUEST)
        await writer.drain()

        length = await _read_varint(reader)
        payload = await reader.readexactly(length)
        return parse_status_payload(payload)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError(
            f"Connection closed after {len(exc.partial)} bytes of a frame"
        ) from exc
    except OSError as exc:
        raise TransportError(host, port, str(exc)) from exc
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug("Error closing probe connection to %s:%d", host, port)


async def ping_server(host: str, port: int, timeout: float = 5.0) -> str:
    """Return the server's advertised version name.

    Raises TransportError, ProbeTimeoutError or ProtocolError.
    """
    try:
        version = await asyncio.wait_for(_probe(host, port), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProbeTimeoutError(host, port, timeout) from exc
    logger.debug("Status probe %s:%d -> %s", host, port, version)
    return version
