"Debug infrastructure for wirekernel with tiered logging and faulthandler support."
import faulthandler, logging, os, signal, sys, threading

def envbool(name: str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

def envint(name:str, default:int)->int:
    "Return int env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return int(raw)
    except ValueError: return default

enabled = envbool("WIREKERNEL_DEBUG")
trace_msgs = envbool("WIREKERNEL_DEBUG_MSGS")
_lock = threading.Lock()

def dbg(*args, **kw):
    if enabled:
        with _lock: print("[wirekernel]", *args, **kw, file=sys.__stderr__, flush=True)

def setup():
    "Initialize debug infrastructure: logging, faulthandler, SIGUSR1 handler."
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.DEBUG if enabled else logging.WARNING, stream=sys.__stderr__,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if not enabled: return
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(log, prefix: str, header: dict|None):
    "Log message flow at high level: msg_type, msg_id, session."
    if not trace_msgs: return
    h = header or {}
    log.warning("%s type=%s id=%s session=%s", prefix, h.get("msg_type"), h.get("msg_id"), h.get("session"))
