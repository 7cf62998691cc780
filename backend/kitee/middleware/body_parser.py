"""
Kitee API - Body Parser Middleware (with raw body capture)
============================================================

What:  Reads, size-checks and parses every request body before routing, and
       keeps the verbatim payload next to the parsed value.
Why:   Route groups work with parsed bodies, but webhook-style handlers
       (signature checks) need the exact original payload, which a parse
       does not preserve byte for byte.
How:   Pure ASGI middleware. The body is buffered up to the limit, inflated
       if it carries a gzip/deflate Content-Encoding, decoded with its
       charset, parsed by content type and stored in the request state:

           request.state.raw_body   str | None   verbatim text
           request.state.body       dict | list | bytes | None
           request.state.body_type  "json" | "urlencoded" | "raw" | None

       The buffered wire bytes are replayed to the app, so handlers can
       still ``await request.body()``.

Parsing modes:
    application/json, */*+json           → JSON object or array (strict)
    application/x-www-form-urlencoded    → nested mapping (a[b]=1, a[]=1)
    anything else                        → raw bytes

``raw_body`` is decoded with ``errors="surrogateescape"``:
``raw_body.encode(charset, "surrogateescape")`` always gives back the
original (inflated) bytes, even when they are not valid text.
"""

import codecs
import json
import logging
import re
import zlib
from email.message import Message
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl

from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Message as ASGIMessage, Receive, Scope, Send

from kitee.config import DEFAULT_BODY_LIMIT
from kitee.exceptions import (
    KiteeError,
    MalformedBodyError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
    error_response,
)
from kitee.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

ParsedBody = Union[Dict[str, Any], List[Any], bytes, None]

# Maximum number of key/value pairs accepted in a form body
FORM_PARAMETER_LIMIT = 1000

# Maximum bracket nesting in form keys; deeper keys are kept flat
FORM_DEPTH_LIMIT = 5

# Highest numeric index turned into a list position (a[3]=x)
FORM_ARRAY_LIMIT = 20

_JSON_WHITESPACE = " \t\n\r"

# Codec names (codecs.lookup(...).name) accepted for JSON bodies
JSON_CHARSETS = frozenset(
    {"utf-8", "utf-16", "utf-16-le", "utf-16-be", "utf-32", "utf-32-le", "utf-32-be"}
)

_BRACKET_SEGMENT = re.compile(r"\[([^\[\]]*)\]")


# ══════════════════════════════════════════════════════════════════════════
# Content negotiation helpers
# ══════════════════════════════════════════════════════════════════════════

def parse_content_type(value: Optional[str]) -> Tuple[str, Optional[str]]:
    """Return ``(media_type, charset)`` for a Content-Type header value."""
    if not value:
        return "", None
    msg = Message()
    msg["content-type"] = value
    media_type = msg.get_content_type() if "/" in value.split(";", 1)[0] else ""
    charset = msg.get_param("charset")
    if isinstance(charset, tuple):
        # RFC 2231 encoded parameter
        charset = charset[2]
    return media_type, charset.strip().lower() if charset else None


def is_json_type(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def is_urlencoded_type(media_type: str) -> bool:
    return media_type == "application/x-www-form-urlencoded"


def has_body(headers: Headers) -> bool:
    if "transfer-encoding" in headers:
        return True
    length = headers.get("content-length")
    return length is not None and length.strip() not in ("", "0")


# ══════════════════════════════════════════════════════════════════════════
# Form decoding (extended syntax)
# ══════════════════════════════════════════════════════════════════════════

def _split_key(key: str) -> List[str]:
    """
    Split ``a[b][c]`` into ``["a", "b", "c"]``.

    Keys that are not well-formed bracket paths, nest deeper than
    FORM_DEPTH_LIMIT, or use ``[]`` anywhere but at the end stay flat.
    """
    head, bracket, rest = key.partition("[")
    if not bracket or not head:
        return [key]

    remainder = bracket + rest
    segments = [head]
    pos = 0
    for match in _BRACKET_SEGMENT.finditer(remainder):
        if match.start() != pos:
            return [key]
        segments.append(match.group(1))
        pos = match.end()

    if pos != len(remainder) or len(segments) - 1 > FORM_DEPTH_LIMIT:
        return [key]
    if "" in segments[1:-1]:
        return [key]
    return segments


def _merge(container: Dict[str, Any], key: str, value: Any) -> None:
    if key not in container:
        container[key] = value
        return
    existing = container[key]
    if isinstance(existing, list):
        existing.append(value)
    else:
        container[key] = [existing, value]


def _assign(container: Dict[str, Any], segments: List[str], value: Any) -> None:
    key, rest = segments[0], segments[1:]
    if not rest:
        _merge(container, key, value)
        return
    if rest == [""]:
        if key not in container:
            container[key] = [value]
        else:
            _merge(container, key, value)
        return

    child = container.get(key)
    if isinstance(child, dict):
        _assign(child, rest, value)
        return
    fresh: Dict[str, Any] = {}
    _assign(fresh, rest, value)
    _merge(container, key, fresh)


def _is_array_index(key: str) -> bool:
    # str.isdigit() also accepts non-ASCII digits that int() rejects
    return key.isascii() and key.isdigit() and int(key) <= FORM_ARRAY_LIMIT


def _compact(node: Any) -> Any:
    """Turn dicts keyed only by small integers into lists."""
    if isinstance(node, list):
        return [_compact(item) for item in node]
    if not isinstance(node, dict):
        return node
    compacted = {key: _compact(value) for key, value in node.items()}
    if compacted and all(_is_array_index(k) for k in compacted):
        return [compacted[k] for k in sorted(compacted, key=int)]
    return compacted


def parse_urlencoded(text: str) -> Dict[str, Any]:
    """
    Decode a form body into a nested mapping.

    ``a=1&a=2`` → ``{"a": ["1", "2"]}``
    ``user[name]=x&user[tags][]=y`` → ``{"user": {"name": "x", "tags": ["y"]}}``

    Raises:
        PayloadTooLargeError: more than FORM_PARAMETER_LIMIT pairs
    """
    if text.count("&") + 1 > FORM_PARAMETER_LIMIT:
        raise PayloadTooLargeError(
            limit=FORM_PARAMETER_LIMIT,
            context={"reason": "too many parameters"},
        )

    result: Dict[str, Any] = {}
    for key, value in parse_qsl(text, keep_blank_values=True):
        _assign(result, _split_key(key), value)
    return {key: _compact(value) for key, value in result.items()}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a valid JSON value")


def parse_json(text: str, media_type: str) -> Union[Dict[str, Any], List[Any]]:
    """Strict JSON: only an object or array is accepted at the top level."""
    stripped = text.lstrip(_JSON_WHITESPACE)
    if not stripped.startswith(("{", "[")):
        raise MalformedBodyError(
            message="JSON body must be an object or an array",
            content_type=media_type,
        )
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError as e:
        raise MalformedBodyError(
            message=f"Invalid JSON body: {e}",
            content_type=media_type,
        ) from e


# ══════════════════════════════════════════════════════════════════════════
# Middleware
# ══════════════════════════════════════════════════════════════════════════

class BodyParserMiddleware:
    """
    Buffers and parses the request body ahead of CORS admission and routing.

    Rejections (413, 415, 400) are answered here and never reach a route.
    """

    SUPPORTED_ENCODINGS = ("identity", "gzip", "deflate")

    def __init__(self, app: ASGIApp, limit: int = DEFAULT_BODY_LIMIT) -> None:
        self.app = app
        self.limit = limit

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if not has_body(headers):
            await self.app(scope, receive, send)
            return

        try:
            self._check_declared_length(headers)
            encoding = self._content_encoding(headers)
            wire = await self._read(receive)
            if wire is None:
                # Client went away mid-body; nothing left to answer.
                return
            payload = self._inflate(wire, encoding)
            raw_body, body, body_type = self._parse(payload, headers)
        except KiteeError as exc:
            logger.warning(
                "Rejected request body for %s %s: %s",
                scope.get("method"),
                scope.get("path"),
                exc.message,
            )
            response = error_response(exc, request_id_var.get())
            await response(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["raw_body"] = raw_body
        state["body"] = body
        state["body_type"] = body_type

        await self.app(scope, self._replay(wire, receive), send)

    # ── Reading ───────────────────────────────────────────────────────────

    def _check_declared_length(self, headers: Headers) -> None:
        declared = headers.get("content-length")
        if declared is None:
            return
        try:
            length = int(declared)
        except ValueError:
            raise MalformedBodyError(message="Invalid Content-Length header") from None
        if length > self.limit:
            raise PayloadTooLargeError(limit=self.limit)

    def _content_encoding(self, headers: Headers) -> str:
        encoding = headers.get("content-encoding", "identity").strip().lower() or "identity"
        if encoding not in self.SUPPORTED_ENCODINGS:
            raise UnsupportedMediaTypeError(
                message=f'Unsupported content encoding "{encoding}"',
                context={"encoding": encoding},
            )
        return encoding

    async def _read(self, receive: Receive) -> Optional[bytes]:
        chunks: List[bytes] = []
        received = 0
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return None
            chunk = message.get("body", b"")
            received += len(chunk)
            if received > self.limit:
                raise PayloadTooLargeError(limit=self.limit)
            chunks.append(chunk)
            if not message.get("more_body", False):
                return b"".join(chunks)

    def _inflate(self, wire: bytes, encoding: str) -> bytes:
        if encoding == "identity" or not wire:
            return wire

        wbits = zlib.MAX_WBITS | 16 if encoding == "gzip" else zlib.MAX_WBITS
        parts: List[bytes] = []
        size = 0
        data = wire
        try:
            # A gzip body may hold several concatenated members
            while data:
                decompressor = zlib.decompressobj(wbits)
                chunk = decompressor.decompress(data, self.limit + 1 - size)
                size += len(chunk)
                parts.append(chunk)
                if size > self.limit or decompressor.unconsumed_tail:
                    raise PayloadTooLargeError(limit=self.limit)
                if not decompressor.eof:
                    raise MalformedBodyError(
                        message=f"Truncated {encoding} body",
                        context={"encoding": encoding},
                    )
                data = decompressor.unused_data
                if data and encoding != "gzip":
                    raise MalformedBodyError(
                        message="Unexpected data after the end of the deflate stream",
                        context={"encoding": encoding},
                    )
        except zlib.error as e:
            raise MalformedBodyError(
                message=f"Invalid {encoding} body: {e}",
                context={"encoding": encoding},
            ) from e
        return b"".join(parts)

    # ── Parsing ───────────────────────────────────────────────────────────

    def _parse(
        self, payload: bytes, headers: Headers
    ) -> Tuple[Optional[str], ParsedBody, Optional[str]]:
        if not payload:
            return None, None, None

        media_type, charset = parse_content_type(headers.get("content-type"))
        charset = charset or "utf-8"
        try:
            codec = codecs.lookup(charset)
        except LookupError:
            raise UnsupportedMediaTypeError(
                message=f'Unsupported charset "{charset.upper()}"',
                context={"charset": charset},
            ) from None
        if is_json_type(media_type) and codec.name not in JSON_CHARSETS:
            raise UnsupportedMediaTypeError(
                message=f'Unsupported charset "{charset.upper()}" for JSON',
                context={"charset": charset},
            )

        raw_body = payload.decode(charset, errors="surrogateescape")

        if is_json_type(media_type):
            return raw_body, parse_json(raw_body, media_type), "json"
        if is_urlencoded_type(media_type):
            return raw_body, parse_urlencoded(raw_body), "urlencoded"
        return raw_body, payload, "raw"

    @staticmethod
    def _replay(wire: bytes, receive: Receive) -> Receive:
        sent = False

        async def replay() -> ASGIMessage:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": wire, "more_body": False}
            return await receive()

        return replay


# ══════════════════════════════════════════════════════════════════════════
# Request-state accessors
# ══════════════════════════════════════════════════════════════════════════

def get_raw_body(request: Request) -> Optional[str]:
    """
    Verbatim request payload as text, or None when there was no body.

    For route handlers that verify payload signatures; works as a plain
    call or as ``Depends(get_raw_body)``.
    """
    return getattr(request.state, "raw_body", None)


def get_parsed_body(request: Request) -> ParsedBody:
    """Parsed request body (JSON value, form mapping or raw bytes)."""
    return getattr(request.state, "body", None)
