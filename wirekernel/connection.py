import hashlib, json
from dataclasses import dataclass, field, fields
from .errors import ConfigError

_required = ("transport", "ip", "shell_port", "iopub_port", "stdin_port", "control_port", "hb_port")


def digest_for(scheme:str):
    "Return the hashlib digest name for an `hmac-<hash>` signature scheme."
    prefix, _, name = scheme.partition("-")
    if prefix != "hmac" or not name: raise ConfigError(f"unsupported signature scheme {scheme!r}")
    try: hashlib.new(name)
    except ValueError: raise ConfigError(f"unsupported signature scheme {scheme!r}") from None
    return name


@dataclass(frozen=True)
class ConnectionInfo:
    transport:str
    ip:str
    shell_port:int
    iopub_port:int
    stdin_port:int
    control_port:int
    hb_port:int
    key:str = field(default="", repr=False)
    signature_scheme:str = "hmac-sha256"
    kernel_name:str = ""

    def __post_init__(self): digest_for(self.signature_scheme)

    @classmethod
    def from_dict(cls, data:dict)->"ConnectionInfo":
        "Build connection info from a parsed connection descriptor."
        missing = [name for name in _required if name not in data]
        if missing: raise ConfigError(f"connection file missing fields: {', '.join(missing)}")
        known = {f.name for f in fields(cls)}
        kw = {k: v for k, v in data.items() if k in known and v is not None}
        try:
            for name in _required:
                if name.endswith("_port"): kw[name] = int(kw[name])
        except (TypeError, ValueError) as exc: raise ConfigError(f"invalid port in connection file: {exc}") from exc
        return cls(**kw)

    @classmethod
    def from_file(cls, path:str)->"ConnectionInfo":
        "Load connection info from JSON connection file at `path`."
        with open(path, encoding="utf-8") as f: data = json.load(f)
        return cls.from_dict(data)

    @property
    def digestmod(self): return digest_for(self.signature_scheme)

    @property
    def key_bytes(self)->bytes: return self.key.encode()

    def port(self, channel)->int:
        name = getattr(channel, "value", channel)
        return getattr(self, f"{name}_port")

    def addr(self, port:int)->str:
        if self.transport == "ipc": return f"ipc://{self.ip}-{port}"
        return f"{self.transport}://{self.ip}:{port}"
