import logging, queue, threading
from enum import Enum
from fastcore.basics import store_attr
import zmq, zmq.asyncio
from .connection import ConnectionInfo
from .debug import dbg, envint
from .errors import BindError

log = logging.getLogger("wirekernel.channels")


class Channel(str, Enum):
    SHELL = "shell"
    CONTROL = "control"
    STDIN = "stdin"
    IOPUB = "iopub"
    HB = "hb"

bind_order = (Channel.HB, Channel.IOPUB, Channel.SHELL, Channel.CONTROL, Channel.STDIN)
socket_types = {Channel.HB: zmq.REP, Channel.IOPUB: zmq.PUB, Channel.SHELL: zmq.ROUTER, Channel.CONTROL: zmq.ROUTER,
    Channel.STDIN: zmq.ROUTER}
request_channels = (Channel.SHELL, Channel.CONTROL)
reply_linger_ms = 1000


class HeartbeatThread(threading.Thread):
    def __init__(self, sock: zmq.Socket):
        "Echo thread owning the bound heartbeat REP socket `sock`."
        super().__init__(daemon=True, name="heartbeat-thread")
        store_attr()
        self.stop_event = threading.Event()

    def run(self):
        "Echo heartbeat payloads unmodified until stopped."
        sock = self.sock
        try:
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                events = dict(poller.poll(100))
                if sock in events and events[sock] & zmq.POLLIN: sock.send_multipart(sock.recv_multipart())
        finally: sock.close(0)

    def stop(self): self.stop_event.set()


class IOPubThread(threading.Thread):
    "IOPub sender thread owning the PUB socket, fed by a bounded queue of encoded frames."

    def __init__(self, sock: zmq.Socket, maxsize:int=10000):
        super().__init__(daemon=True, name="iopub-thread")
        self.sock = sock
        self.q = queue.Queue(maxsize=maxsize)
        self.lock = threading.Lock()
        self.enqueued = 0
        self.sent = 0
        self.dropped = 0

    def publish(self, frames: list[bytes]):
        "Queue `frames` for broadcast; drop on full queue."
        with self.lock:
            self.enqueued += 1
            try: self.q.put_nowait(frames)
            except queue.Full:
                self.dropped += 1
                dropped = self.dropped
            else: return
        if dropped in (1, 100, 1000): log.warning("IOPub queue full; dropping. enq=%d sent=%d", self.enqueued, self.sent)

    def run(self):
        dbg("IOPubThread starting...")
        try:
            while True:
                frames = self.q.get()
                if frames is None: break
                try: self.sock.send_multipart(frames)
                except zmq.ZMQError as exc:
                    log.error("IOPub send error: %s", exc)
                    continue
                self.sent += 1
        finally:
            dbg("IOPubThread exiting")
            self.sock.close(0)

    def stop(self):
        try: self.q.put_nowait(None)
        except queue.Full:
            while True:
                try: self.q.get_nowait()
                except queue.Empty: break
            self.q.put_nowait(None)


class ChannelSet:
    "The five kernel sockets, bound from one `ConnectionInfo`."

    def __init__(self, connection: ConnectionInfo, context: zmq.Context|None=None):
        self.connection = connection
        self.context = context or zmq.Context.instance()
        self.async_context = zmq.asyncio.Context.shadow(self.context)
        self.sockets = {}
        self.hb = None
        self.iopub = None
        self.started = False

    def addr(self, channel: Channel)->str: return self.connection.addr(self.connection.port(channel))

    def _socket(self, channel: Channel):
        ctx = self.async_context if channel in request_channels else self.context
        sock = ctx.socket(socket_types[channel])
        sock.linger = 0
        if socket_types[channel] == zmq.ROUTER and hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
        if channel is Channel.IOPUB and (hwm := envint("WIREKERNEL_IOPUB_SNDHWM", 0)) > 0: sock.sndhwm = hwm
        return sock

    def bind(self):
        "Bind every channel; raises `BindError` naming the first channel that fails."
        for channel in bind_order:
            addr = self.addr(channel)
            sock = self._socket(channel)
            try: sock.bind(addr)
            except zmq.ZMQError as exc:
                sock.close(0)
                self.close()
                raise BindError(channel.value, addr, exc) from exc
            dbg(f"{channel.value} bound to {addr}")
            self.sockets[channel] = sock
        self.hb = HeartbeatThread(self.sockets[Channel.HB])
        self.iopub = IOPubThread(self.sockets[Channel.IOPUB], maxsize=envint("WIREKERNEL_IOPUB_QMAX", 10000))

    def start(self):
        "Start the heartbeat and IOPub threads."
        if self.hb is None: raise RuntimeError("channels not bound")
        self.hb.start()
        self.iopub.start()
        self.started = True

    def socket(self, channel: Channel): return self.sockets[channel]

    async def recv(self, channel: Channel)->list[bytes]: return await self.sockets[channel].recv_multipart()

    async def send(self, channel: Channel, frames: list[bytes]):
        if channel not in request_channels: raise ValueError(f"cannot send replies on {channel.value}")
        await self.sockets[channel].send_multipart(frames)

    def pending(self, channel: Channel)->bool:
        "Whether a message is already queued on `channel`."
        sock = self.sockets.get(channel)
        if sock is None or sock.closed: return False
        return bool(sock.get(zmq.EVENTS) & zmq.POLLIN)

    def publish(self, frames: list[bytes]):
        if self.iopub is None: raise RuntimeError("channels not bound")
        self.iopub.publish(frames)

    def close(self):
        "Stop threads and close all sockets."
        threads = [t for t in (self.hb, self.iopub) if t is not None]
        if self.started:
            for t in threads: t.stop()
            for t in threads: t.join(timeout=1)
        owned = {Channel.HB, Channel.IOPUB} if self.started else set()
        for channel, sock in self.sockets.items():
            if channel not in owned and not sock.closed: sock.close(reply_linger_ms if channel in request_channels else 0)
        self.sockets.clear()
        self.hb = self.iopub = None
        self.started = False
