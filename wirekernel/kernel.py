import asyncio, logging, os, signal, threading
from . import debug as _dbg_mod
from .channels import ChannelSet, request_channels
from .connection import ConnectionInfo
from .debug import dbg
from .dispatcher import Dispatcher
from .handler import Handler

log = logging.getLogger("wirekernel.kernel")
critical_threads = {"iopub-thread", "heartbeat-thread"}


def resolve_variant(variant:str|None, connection: ConnectionInfo)->str:
    "Pick the kernel variant from the CLI, `WIREKERNEL_VARIANT`, or the connection's kernel_name."
    if variant: return variant
    if (env := os.environ.get("WIREKERNEL_VARIANT")): return env
    name = connection.kernel_name.lower()
    if name == "ipython" or name.endswith(("-ipy", "-ipython")): return "ipython"
    return "python"


def _install_thread_excepthook(kernel: "Kernel"):
    prev = threading.excepthook
    def hook(args):
        prev(args)
        name = getattr(args.thread, "name", "")
        if name not in critical_threads: return
        log.error("Critical thread crashed: %s", name, exc_info=(args.exc_type, args.exc_value, args.exc_traceback))
        kernel.request_stop()
    threading.excepthook = hook
    return prev


class Kernel:
    def __init__(self, connection_file:str, variant:str|None=None, handler: Handler|None=None):
        "Load `connection_file` and assemble channels, handler and dispatcher."
        self.connection = ConnectionInfo.from_file(connection_file)
        self.variant = resolve_variant(variant, self.connection)
        self.channels = ChannelSet(self.connection)
        if handler is None:
            from .engine import IPythonEngine
            handler = IPythonEngine(self.variant)
        self.handler = handler
        self.dispatcher = Dispatcher(self.connection, self.channels, handler)
        self.loop = None

    def start(self):
        "Bind all channels and serve shell/control until a shutdown_request is handled."
        _dbg_mod.setup()
        dbg("kernel starting...")
        self.channels.bind()
        prev_hook = _install_thread_excepthook(self)
        prev_sigint = signal.getsignal(signal.SIGINT)
        try:
            self.channels.start()
            signal.signal(signal.SIGINT, self.handle_sigint)
            asyncio.run(self._serve())
        finally:
            signal.signal(signal.SIGINT, prev_sigint)
            threading.excepthook = prev_hook
            self.channels.close()
            dbg("kernel stopped")

    async def _serve(self):
        self.loop = asyncio.get_running_loop()
        tasks = [asyncio.create_task(self.dispatcher.serve(channel), name=f"{channel.value}-serve") for channel in request_channels]
        dbg("kernel ready")
        try: await self.dispatcher.shutdown_event.wait()
        finally:
            for task in tasks: task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.loop = None

    def request_stop(self):
        "Stop serving from any thread."
        loop = self.loop
        if loop is None: return
        try: loop.call_soon_threadsafe(self.dispatcher.shutdown_event.set)
        except RuntimeError: pass

    def handle_sigint(self, signum, frame):
        "Map SIGINT to `Handler.interrupt()`; a blocking execute gets a KeyboardInterrupt."
        dbg("SIGINT")
        if self.handler.interrupt(): return
        if self.dispatcher.executing: raise KeyboardInterrupt


def run_kernel(connection_file:str, variant:str|None=None):
    "Run kernel given a connection file path."
    signal.signal(signal.SIGINT, signal.default_int_handler)
    kernel = Kernel(connection_file, variant=variant)
    kernel.start()
