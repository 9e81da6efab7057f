import asyncio, socket, threading
import pytest, zmq
from wirekernel.channels import Channel, ChannelSet, IOPubThread
from wirekernel.errors import BindError
from .kernel_utils import TIMEOUT, make_connection


@pytest.fixture
def bound():
    chans = ChannelSet(make_connection(), context=zmq.Context())
    chans.bind()
    chans.start()
    yield chans
    chans.close()
    chans.context.term()


def test_bind_failure_names_channel():
    blocker = socket.socket()
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        conn = make_connection(control_port=blocker.getsockname()[1])
        ctx = zmq.Context()
        chans = ChannelSet(conn, context=ctx)
        with pytest.raises(BindError) as info: chans.bind()
        assert info.value.channel == "control"
        assert str(conn.control_port) in info.value.addr
        assert chans.sockets == {}
        ctx.term()
    finally: blocker.close()


def test_heartbeat_echoes_payload(bound):
    req = bound.context.socket(zmq.REQ)
    req.linger = 0
    req.connect(bound.addr(Channel.HB))
    try:
        for payload in (b"ping", b"\x00\xffbinary"):
            req.send(payload)
            assert req.poll(TIMEOUT * 1000)
            assert req.recv() == payload
    finally: req.close()


def test_publish_reaches_subscriber(bound):
    sub = bound.context.socket(zmq.SUB)
    sub.linger = 0
    sub.setsockopt(zmq.SUBSCRIBE, b"")
    sub.connect(bound.addr(Channel.IOPUB))
    try:
        for _ in range(TIMEOUT * 10):
            bound.publish([b"topic", b"hello"])
            if sub.poll(100): break
        assert sub.recv_multipart() == [b"topic", b"hello"]
    finally: sub.close()


def test_request_reply_round_trip(bound):
    async def go():
        dealer = bound.async_context.socket(zmq.DEALER)
        dealer.linger = 0
        dealer.connect(bound.addr(Channel.SHELL))
        try:
            await dealer.send_multipart([b"x", b"y"])
            frames = await asyncio.wait_for(bound.recv(Channel.SHELL), TIMEOUT)
            assert frames[1:] == [b"x", b"y"]
            await bound.send(Channel.SHELL, frames)
            assert await asyncio.wait_for(dealer.recv_multipart(), TIMEOUT) == [b"x", b"y"]
            with pytest.raises(ValueError): await bound.send(Channel.IOPUB, [b"x"])
        finally: dealer.close()
    asyncio.run(go())


def test_close_releases_sockets(bound):
    socks = dict(bound.sockets)
    bound.close()
    assert bound.sockets == {} and not bound.started
    assert all(s.closed for s in socks.values())
    assert not bound.pending(Channel.SHELL)


def test_iopub_counts_under_concurrent_publish():
    thread = IOPubThread(sock=None, maxsize=1500)
    workers = [threading.Thread(target=lambda: [thread.publish([b"x"]) for _ in range(500)]) for _ in range(4)]
    for w in workers: w.start()
    for w in workers: w.join()
    assert thread.enqueued == 2000
    assert thread.dropped == 500
    assert thread.q.qsize() == 1500
