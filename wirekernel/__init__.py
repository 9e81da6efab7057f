from importlib.metadata import PackageNotFoundError, version
from .codec import Message, decode, encode, create_reply
from .dispatcher import Dispatcher
from .handler import Handler
from .kernel import Kernel, run_kernel

try:
    __version__ = version("wirekernel")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["Dispatcher", "Handler", "Kernel", "Message", "create_reply", "decode", "encode", "run_kernel", "__version__"]
