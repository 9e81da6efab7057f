"Exception taxonomy for the kernel protocol engine."


class KernelError(Exception): pass

class ConfigError(KernelError, ValueError): pass


class ProtocolError(KernelError):
    "Inbound frames that must be dropped without a reply or status."


class MalformedFrame(ProtocolError): pass


class SignatureMismatch(ProtocolError):
    def __init__(self, received:str, expected:str):
        super().__init__(f"invalid signature {received!r}; want {expected!r}")
        self.received, self.expected = received, expected


class DuplicateSignature(ProtocolError):
    def __init__(self, signature:str):
        super().__init__(f"duplicate signature {signature!r}")
        self.signature = signature


class BindError(KernelError):
    def __init__(self, channel:str, addr:str, cause:Exception|None=None):
        super().__init__(f"{channel} channel failed to bind {addr}: {cause}")
        self.channel, self.addr, self.cause = channel, addr, cause


class HandlerFailure(KernelError):
    def __init__(self, msg_type:str, cause:BaseException):
        super().__init__(f"{msg_type} handler raised {type(cause).__name__}: {cause}")
        self.msg_type, self.cause = msg_type, cause
