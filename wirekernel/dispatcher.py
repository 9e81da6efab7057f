import asyncio, contextvars, inspect, logging, traceback
from collections import deque
from dataclasses import dataclass
from enum import Enum
from fastcore.basics import store_attr
from jupyter_client.session import new_id
import zmq
from . import debug as _dbg_mod
from .channels import Channel, ChannelSet
from .codec import Message, create_reply, decode, encode, new_header, reply_type
from .connection import ConnectionInfo
from .debug import dbg
from .errors import DuplicateSignature, HandlerFailure, ProtocolError, SignatureMismatch
from .handler import Handler

log = logging.getLogger("wirekernel.dispatcher")


class MsgType(str, Enum):
    KERNEL_INFO = "kernel_info_request"
    EXECUTE = "execute_request"
    IS_COMPLETE = "is_complete_request"
    SHUTDOWN = "shutdown_request"

    @property
    def reply(self)->str: return reply_type(self.value)

    @classmethod
    def parse(cls, value)->"MsgType|None":
        try: return cls(value)
        except ValueError: return None


class Stage(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    BUSY_PUBLISHED = "busy_published"
    ROUTED = "routed"
    HANDLED = "handled"
    ROUTE_UNRECOGNIZED = "route_unrecognized"
    HANDLER_FAILED = "handler_failed"
    IDLE_PUBLISHED = "idle_published"
    REPLIED = "replied"


@dataclass
class RequestState:
    channel: Channel
    msg: Message
    kind: MsgType|None = None
    stage: Stage = Stage.RECEIVED

    def advance(self, stage: Stage):
        self.stage = stage
        dbg(f"{self.channel.value} {self.msg.msg_type} id={str(self.msg.msg_id)[:8]} -> {stage.value}")


class DigestHistory:
    "Bounded record of accepted signatures, so a replayed message is rejected."

    def __init__(self, maxsize:int=2**16):
        self.maxsize = maxsize
        self.seen = set()
        self.order = deque()

    def check(self, signature:str):
        if not signature: return
        if signature in self.seen: raise DuplicateSignature(signature)
        self.seen.add(signature)
        self.order.append(signature)
        if len(self.order) > self.maxsize: self.seen.discard(self.order.popleft())


async def _maybe_await(value):
    return await value if inspect.isawaitable(value) else value


class Dispatcher:
    "Request lifecycle for the shell and control channels: decode, bracket with status, route, reply."

    def __init__(self, connection: ConnectionInfo, channels: ChannelSet, handler: Handler,
        username:str="kernel", session_id:str|None=None):
        store_attr("connection,channels,handler,username")
        self.key, self.digestmod = connection.key_bytes, connection.digestmod
        self.session_id = session_id or new_id()
        self.digests = DigestHistory()
        self.inflight = {}
        self.abort_after = set()
        self.parent_var = contextvars.ContextVar("wirekernel.parent", default=None)
        self.shutdown_event = asyncio.Event()
        self.shutdown_requested = False
        self.routes = {MsgType.KERNEL_INFO: self._kernel_info, MsgType.EXECUTE: self._execute,
            MsgType.IS_COMPLETE: self._is_complete, MsgType.SHUTDOWN: self._shutdown}
        handler.attach(self.broadcast)

    @property
    def executing(self)->bool:
        return any(s.kind is MsgType.EXECUTE and s.stage is Stage.ROUTED for s in self.inflight.values())

    def decode(self, channel: Channel, frames: list[bytes])->Message|None:
        "Decode and authenticate `frames`; protocol violations are logged and dropped."
        try:
            msg = decode(self.key, frames, self.digestmod)
            self.digests.check(msg.signature)
        except SignatureMismatch as exc:
            log.warning("Dropping %s message with bad signature: received %s, expected %s", channel.value, exc.received, exc.expected)
            return None
        except ProtocolError as exc:
            log.warning("Dropping %s message: %s", channel.value, exc)
            return None
        _dbg_mod.tlog(log, f"{channel.value} recv", msg.header)
        return msg

    async def dispatch(self, channel: Channel, frames: list[bytes])->Message|None:
        "Handle one raw request from `channel`; returns the reply sent, if any."
        msg = self.decode(channel, frames)
        if msg is None: return None
        return await self.handle(channel, msg)

    async def handle(self, channel: Channel, msg: Message, abort:bool=False)->Message|None:
        "Run the busy/route/idle/reply lifecycle for an authenticated `msg`."
        state = RequestState(channel, msg)
        self.inflight[id(state)] = state
        token = self.parent_var.set(msg)
        try:
            state.advance(Stage.AUTHENTICATED)
            self.publish_status("busy", msg)
            try:
                state.advance(Stage.BUSY_PUBLISHED)
                content = await self._route(state, abort)
            finally:
                self.publish_status("idle", msg)
                state.advance(Stage.IDLE_PUBLISHED)
            if state.kind is None: return None
            reply = create_reply(msg, state.kind.reply, content)
            await self.channels.send(channel, encode(self.key, reply, self.digestmod))
            state.advance(Stage.REPLIED)
            _dbg_mod.tlog(log, f"{channel.value} reply", reply.header)
        finally:
            self.parent_var.reset(token)
            self.inflight.pop(id(state), None)
        if state.kind is MsgType.EXECUTE and content.get("status") == "error" and msg.content.get("stop_on_error", True):
            self.abort_after.add(channel)
        if self.shutdown_requested: self.shutdown_event.set()
        return reply

    async def _route(self, state: RequestState, abort:bool=False)->dict|None:
        msg = state.msg
        state.kind = MsgType.parse(msg.msg_type)
        state.advance(Stage.ROUTED)
        if state.kind is None:
            log.warning("Unrecognized msg_type %r on %s channel; not replying", msg.msg_type, state.channel.value)
            state.advance(Stage.ROUTE_UNRECOGNIZED)
            return None
        # Jupyter clients expect "aborted" here, not "abort"
        if abort and state.kind is MsgType.EXECUTE:
            state.advance(Stage.HANDLED)
            return dict(status="aborted", execution_count=self.handler.execution_count, user_expressions={}, payload=[])
        try: content = await self.routes[state.kind](msg)
        except (Exception, KeyboardInterrupt) as exc:
            state.advance(Stage.HANDLER_FAILED)
            failure = HandlerFailure(state.kind.value, exc)
            log.error("%s", failure, exc_info=exc)
            return self._failure_content(state.kind, exc)
        state.advance(Stage.HANDLED)
        return content

    def _failure_content(self, kind: MsgType, exc: BaseException)->dict:
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        error = dict(ename=type(exc).__name__, evalue=str(exc), traceback=tb)
        if kind is not MsgType.EXECUTE: return dict(status="error") | error
        self.broadcast("error", error)
        return dict(status="error", execution_count=self.handler.execution_count, user_expressions={}, payload=[]) | error

    async def _kernel_info(self, msg: Message)->dict: return dict(await _maybe_await(self.handler.describe()))

    async def _execute(self, msg: Message)->dict:
        content = msg.content
        code = content.get("code")
        if not isinstance(code, str): raise ValueError("execute_request missing required field: code")
        silent = bool(content.get("silent", False))
        store_history = False if silent else bool(content.get("store_history", True))
        reply = await _maybe_await(self.handler.execute(code, silent=silent, store_history=store_history,
            user_expressions=content.get("user_expressions") or {}, allow_stdin=bool(content.get("allow_stdin", False))))
        return dict(user_expressions={}, payload=[]) | dict(reply)

    async def _is_complete(self, msg: Message)->dict:
        return dict(await _maybe_await(self.handler.is_complete(msg.content.get("code", ""))))

    async def _shutdown(self, msg: Message)->dict:
        restart = bool(msg.content.get("restart", False))
        reply = await _maybe_await(self.handler.shutdown(restart))
        self.shutdown_requested = True
        return dict(status="ok", restart=restart) | dict(reply or {})

    async def abort_queued(self, channel: Channel):
        "Answer execute requests already queued on `channel` with aborted replies."
        while self.channels.pending(channel):
            msg = self.decode(channel, await self.channels.recv(channel))
            if msg is None: continue
            dbg(f"ABORT_QUEUED {msg.msg_type} id={str(msg.msg_id)[:8]}")
            await self.handle(channel, msg, abort=True)

    async def serve(self, channel: Channel):
        "Receive and dispatch requests on `channel` in arrival order until shutdown."
        while not self.shutdown_event.is_set():
            try: frames = await self.channels.recv(channel)
            except zmq.ZMQError as exc:
                dbg(f"{channel.value} RECV error: {exc}")
                return
            try:
                await self.dispatch(channel, frames)
                if channel in self.abort_after:
                    self.abort_after.discard(channel)
                    await self.abort_queued(channel)
            except Exception as exc: log.error("Internal error on %s channel", channel.value, exc_info=exc)

    def broadcast(self, msg_type:str, content:dict, parent: Message|None=None):
        "Publish on IOPub, parented to `parent` or to the request handled in this context."
        if parent is None: parent = self.parent_var.get()
        topic = f"kernel.{self.session_id}.{msg_type}".encode()
        if parent is None: msg = Message(idents=[topic], header=new_header(msg_type, self.session_id, self.username),
            parent_header={}, metadata={}, content=content)
        else: msg = create_reply(parent, msg_type, content, idents=[topic])
        self.channels.publish(encode(self.key, msg, self.digestmod))

    def publish_status(self, state:str, parent: Message|None=None):
        if parent is not None: _dbg_mod.tlog(log, f"iopub status={state}", parent.header)
        self.broadcast("status", dict(execution_state=state), parent)
