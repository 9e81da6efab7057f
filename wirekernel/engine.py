"IPython-backed execution engine implementing the `Handler` contract."
import asyncio, logging, sys
from contextlib import redirect_stderr, redirect_stdout
from typing import Callable
from IPython.core.async_helpers import _asyncio_runner
from IPython.core.displayhook import DisplayHook
from IPython.core.displaypub import DisplayPublisher
from IPython.core.interactiveshell import InteractiveShell
from .handler import Handler, KernelVariant, get_variant, kernel_info

log = logging.getLogger("wirekernel.engine")


class EngineStream:
    def __init__(self, name:str, sink: Callable[[str, str], None]):
        "Line-buffered text stream that emits complete lines to `sink`."
        self.name = name
        self._sink = sink
        self._buffer = ""

    def write(self, value)->int:
        if value is None: return 0
        if isinstance(value, bytes): text = value.decode(errors="replace")
        else: text = str(value)
        if not text: return 0
        self._buffer += text
        if "\n" in self._buffer:
            head, _, self._buffer = self._buffer.rpartition("\n")
            self._sink(self.name, head + "\n")
        return len(text)

    def writelines(self, lines)->int: return sum(self.write(line) or 0 for line in lines)

    def flush(self):
        if self._buffer:
            text, self._buffer = self._buffer, ""
            self._sink(self.name, text)

    def isatty(self)->bool: return False


class EngineDisplayPublisher(DisplayPublisher):
    def __init__(self, sender: Callable[[dict], None]):
        "Forward display_pub events to `sender`."
        super().__init__()
        self._sender = sender

    def publish(self, data, metadata=None, transient=None, update=False, **kwargs):
        self._sender(dict(type="display", data=data, metadata=metadata or {}, transient=transient or {}, update=bool(update)))

    def clear_output(self, wait:bool=False): self._sender(dict(type="clear_output", wait=bool(wait)))


class EngineDisplayHook(DisplayHook):
    def __init__(self, shell=None):
        "DisplayHook that captures the last result instead of printing it."
        super().__init__(shell=shell)
        self.reset_capture()

    def reset_capture(self):
        self.last = None
        self.last_metadata = None

    def write_output_prompt(self): pass

    def write_format_data(self, format_dict, md_dict=None):
        self.last = format_dict
        self.last_metadata = md_dict or {}

    def finish_displayhook(self): self._is_active = False


class IPythonEngine(Handler):
    def __init__(self, variant: KernelVariant|str="python", shell: InteractiveShell|None=None, banner:str|None=None):
        "Run cells in an IPython `InteractiveShell`, broadcasting output through the attached publisher."
        self.variant = get_variant(variant) if isinstance(variant, str) else variant
        self.banner = banner
        self.shell = shell or InteractiveShell.instance()
        self.shell.displayhook = EngineDisplayHook(shell=self.shell)
        self.shell.display_trap.hook = self.shell.displayhook
        self.shell.display_pub = EngineDisplayPublisher(self._send_display)
        self.shell._last_traceback = None

        def _showtraceback(etype, evalue, stb): self.shell._last_traceback = stb
        self.shell._showtraceback = _showtraceback
        self._stdout = EngineStream("stdout", self._send_stream)
        self._stderr = EngineStream("stderr", self._send_stream)
        self._silent = False
        self._exec_task = None
        self._interrupted = False
        self._closed = False

    @property
    def execution_count(self)->int: return self.shell.execution_count

    def describe(self)->dict: return kernel_info(self.variant, banner=self.banner)

    def _send_stream(self, name:str, text:str):
        if not self._silent: self.broadcast("stream", dict(name=name, text=text))

    def _send_display(self, event: dict):
        if self._silent: return
        if event["type"] == "clear_output":
            self.broadcast("clear_output", dict(wait=event["wait"]))
            return
        content = dict(data=event["data"], metadata=event["metadata"], transient=event["transient"])
        self.broadcast("update_display_data" if event["update"] else "display_data", content)

    async def _run_cell(self, code:str, silent:bool, store_history:bool):
        "Run `code`, going through IPython's async path when the cell needs it."
        shell = self.shell
        try:
            transformed = shell.transform_cell(code)
            exc_tuple = None
        except Exception:
            transformed = code
            exc_tuple = sys.exc_info()
        should_run_async = shell.should_run_async(code, transformed_cell=transformed, preprocessing_exc_tuple=exc_tuple)
        if not (_asyncio_runner and shell.loop_runner is _asyncio_runner and should_run_async):
            return shell.run_cell(code, store_history=store_history, silent=silent)
        res = None
        task = asyncio.ensure_future(shell.run_cell_async(code, store_history=store_history, silent=silent,
            transformed_cell=transformed, preprocessing_exc_tuple=exc_tuple))
        self._exec_task = task
        try: res = await task
        except asyncio.CancelledError:
            if self._interrupted: raise KeyboardInterrupt from None
            raise
        finally:
            self._exec_task = None
            shell.events.trigger("post_execute")
            if not silent: shell.events.trigger("post_run_cell", res)
        return res

    async def execute(self, code:str, silent:bool=False, store_history:bool=True, user_expressions:dict|None=None,
        allow_stdin:bool=False)->dict:
        shell = self.shell
        shell.displayhook.reset_capture()
        shell._last_traceback = None
        self._interrupted = False
        if not silent: self.broadcast("execute_input", dict(code=code, execution_count=shell.execution_count))
        self._silent = silent
        try:
            with redirect_stdout(self._stdout), redirect_stderr(self._stderr):
                result = await self._run_cell(code, silent=silent, store_history=store_history)
        finally:
            self._stdout.flush()
            self._stderr.flush()
            self._silent = False
            self._interrupted = False

        count = result.execution_count if result.execution_count is not None else shell.execution_count
        payload = shell.payload_manager.read_payload()
        shell.payload_manager.clear_payload()
        err = result.error_in_exec or result.error_before_exec
        if err is not None:
            ename = "KeyboardInterrupt" if isinstance(err, asyncio.CancelledError) else type(err).__name__
            error = dict(ename=ename, evalue=str(err), traceback=shell._last_traceback or [])
            self.broadcast("error", error)
            return dict(status="error", execution_count=count, user_expressions={}, payload=payload) | error
        if not silent and shell.displayhook.last is not None:
            self.broadcast("execute_result", dict(execution_count=count, data=shell.displayhook.last,
                metadata=shell.displayhook.last_metadata or {}))
        return dict(status="ok", execution_count=count, user_expressions=shell.user_expressions(user_expressions or {}),
            payload=payload)

    def is_complete(self, code:str)->dict:
        "Report completeness status and indentation for `code`."
        tm = getattr(self.shell, "input_transformer_manager", None)
        if tm is None: tm = self.shell.input_splitter
        status, indent_spaces = tm.check_complete(code)
        reply = dict(status=status)
        if status == "incomplete": reply["indent"] = " " * (indent_spaces or 0)
        return reply

    def interrupt(self)->bool:
        "Cancel the running async cell, if any."
        task = self._exec_task
        if task is None or task.done(): return False
        self._interrupted = True
        task.get_loop().call_soon_threadsafe(task.cancel)
        return True

    def shutdown(self, restart:bool)->dict:
        "Close history and temp files; later calls are no-ops."
        if not self._closed:
            self._closed = True
            log.info("Shutting down engine (restart=%s)", restart)
            self.shell.atexit_operations()
        return dict(restart=restart)
