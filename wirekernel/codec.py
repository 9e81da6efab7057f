"""Wire codec for kernel messages.

A message on the wire is a list of frames:

    [ident, ..., DELIM, signature, header, parent_header, metadata, content, buffer, ...]

The signature is a lowercase hex HMAC over the four JSON body frames followed by any
extra buffers, keyed with the connection's shared secret. Decoding verifies the
signature over the raw frames before any JSON is parsed.
"""
import hmac, json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from jupyter_client.jsonutil import json_default
from jupyter_client.session import DELIM, new_id
from .errors import MalformedFrame, SignatureMismatch

PROTOCOL_VERSION = "5.3"
body_names = ("header", "parent_header", "metadata", "content")


def json_packer(obj)->bytes:
    return json.dumps(obj, default=json_default, ensure_ascii=False, allow_nan=False).encode("utf8", errors="surrogateescape")


def utcnow()->str: return datetime.now(timezone.utc).isoformat()


def new_header(msg_type:str, session:str, username:str)->dict:
    "Build a fresh header with a new msg_id and the current timestamp."
    return dict(msg_id=new_id(), username=username, session=session, date=utcnow(), msg_type=msg_type, version=PROTOCOL_VERSION)


def reply_type(msg_type:str)->str:
    "Map `foo_request` to `foo_reply`."
    base = msg_type[:-len("_request")] if msg_type.endswith("_request") else msg_type
    return f"{base}_reply"


@dataclass(frozen=True)
class Message:
    idents: list[bytes]
    header: dict
    parent_header: dict
    metadata: dict
    content: dict
    buffers: list[bytes] = field(default_factory=list)
    delimiter: bytes = DELIM
    signature: str = field(default="", compare=False)

    @property
    def msg_type(self)->str|None: return self.header.get("msg_type")

    @property
    def msg_id(self)->str: return str(self.header.get("msg_id", "?"))


def _as_bytes(frame)->bytes: return frame if isinstance(frame, bytes) else bytes(frame)


def _key_bytes(key)->bytes: return key.encode() if isinstance(key, str) else bytes(key or b"")


def sign(key, parts, digestmod:str="sha256")->str:
    "Hex HMAC of `parts` in order; an empty key means an unsigned session."
    key = _key_bytes(key)
    if not key: return ""
    h = hmac.new(key, digestmod=digestmod)
    for part in parts: h.update(part)
    return h.hexdigest()


def split_idents(frames:list[bytes])->tuple[list[bytes], list[bytes]]:
    "Split raw frames into routing identities and the frames after the delimiter."
    try: idx = frames.index(DELIM)
    except ValueError: raise MalformedFrame("missing delimiter frame") from None
    return frames[:idx], frames[idx + 1:]


def decode(key, frames, digestmod:str="sha256")->Message:
    "Verify and parse raw `frames` into a `Message`."
    frames = [_as_bytes(f) for f in frames]
    idents, rest = split_idents(frames)
    if len(rest) < 5: raise MalformedFrame(f"expected signature and 4 body frames, got {len(rest)} frames")
    signature, signed = rest[0], rest[1:]
    if _key_bytes(key):
        expected = sign(key, signed, digestmod)
        if not hmac.compare_digest(signature, expected.encode()):
            raise SignatureMismatch(signature.decode("ascii", errors="replace"), expected)
    parts = {}
    for name, frame in zip(body_names, signed):
        try: value = json.loads(frame)
        except ValueError as exc: raise MalformedFrame(f"{name} frame is not valid JSON: {exc}") from exc
        if not isinstance(value, dict): raise MalformedFrame(f"{name} frame is not a JSON object")
        parts[name] = value
    return Message(idents=idents, buffers=signed[4:], signature=signature.decode("ascii", errors="replace"), **parts)


def encode(key, msg:Message, digestmod:str="sha256")->list[bytes]:
    "Serialize and sign `msg`; returns the frames to send."
    bodies = [json_packer(getattr(msg, name)) for name in body_names]
    buffers = [_as_bytes(b) for b in msg.buffers]
    signature = sign(key, bodies + buffers, digestmod)
    return [_as_bytes(i) for i in msg.idents] + [msg.delimiter, signature.encode()] + bodies + buffers


def create_reply(request:Message, msg_type:str, content:dict|None=None, metadata:dict|None=None,
    idents:list[bytes]|None=None)->Message:
    "Derive a message answering `request`; `idents` replaces the routing frames for broadcasts."
    header = new_header(msg_type, request.header.get("session", ""), request.header.get("username", ""))
    return Message(idents=list(request.idents if idents is None else idents), delimiter=request.delimiter, header=header,
        parent_header=request.header, metadata=metadata or {}, content=content or {})
