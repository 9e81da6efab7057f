"""Contract between the dispatcher and an execution engine.

The dispatcher owns the wire: status bracketing, reply construction and signing. A
`Handler` only turns request content into reply content, and may broadcast output
through the `publish` callable it is attached to.
"""
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from typing import Callable
from .codec import PROTOCOL_VERSION
from .errors import ConfigError

Publisher = Callable[[str, dict], None]


@dataclass(frozen=True)
class KernelVariant:
    name:str
    file_extension:str
    pygments_lexer:str
    codemirror_mode:dict|str
    mimetype:str = "text/x-python"
    nbconvert_exporter:str = "python"

VARIANTS = dict(
    python=KernelVariant("python", ".py", "python3", {"name": "python", "version": 3}),
    ipython=KernelVariant("ipython", ".ipy", "ipython3", {"name": "ipython", "version": 3}))


def get_variant(name:str)->KernelVariant:
    try: return VARIANTS[name]
    except KeyError: raise ConfigError(f"unknown kernel variant {name!r}; choose from {', '.join(VARIANTS)}") from None


def implementation_version()->str:
    try: return version("wirekernel")
    except PackageNotFoundError: return "0.0.0+local"


def python_version()->str: return ".".join(str(x) for x in sys.version_info[:3])


def kernel_info(variant: KernelVariant, implementation:str="wirekernel", banner:str|None=None, help_links:list|None=None)->dict:
    "Build kernel_info_reply content for `variant`."
    language_info = dict(name="python", version=python_version(), mimetype=variant.mimetype,
        file_extension=variant.file_extension, pygments_lexer=variant.pygments_lexer, codemirror_mode=variant.codemirror_mode,
        nbconvert_exporter=variant.nbconvert_exporter)
    if banner is None: banner = f"{implementation} {implementation_version()} ({variant.name}, Python {python_version()})"
    return dict(status="ok", protocol_version=PROTOCOL_VERSION, implementation=implementation,
        implementation_version=implementation_version(), language_info=language_info, banner=banner, help_links=help_links or [])


class Handler(ABC):
    publish: Publisher|None = None

    def attach(self, publish: Publisher):
        "Route broadcast output (stream, execute_result, ...) through `publish`."
        self.publish = publish

    def broadcast(self, msg_type:str, content:dict):
        if self.publish is not None: self.publish(msg_type, content)

    @property
    def execution_count(self)->int: return 0

    @abstractmethod
    def describe(self)->dict:
        "Static kernel_info_reply content."

    @abstractmethod
    def execute(self, code:str, silent:bool=False, store_history:bool=True, user_expressions:dict|None=None,
        allow_stdin:bool=False)->dict:
        "Run `code`; returns execute_reply content with `status` and `execution_count`. May be async."

    @abstractmethod
    def is_complete(self, code:str)->dict:
        "Classify `code` as complete, incomplete, invalid or unknown."

    @abstractmethod
    def shutdown(self, restart:bool)->dict:
        "Release engine resources; the process exits afterwards."

    def interrupt(self)->bool:
        "Ask an in-flight execute to stop; True when a cancellation was scheduled."
        return False
