"""
Onion Routing Errors — the failure taxonomy shared by every hop.

Each error carries a stable ``kind`` string and the HTTP status a service
answers with. Errors cross the wire as::

    {"status": "error", "kind": "<kind>", "message": "<detail>"}

and are rebuilt on the calling side with ``error_from_dict`` so a failure at
the exit node reaches the sender with its original kind.
"""


class OnionError(Exception):
    """Base class for onion routing failures."""

    kind = "OnionError"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"status": "error", "kind": self.kind, "message": self.message}


class InsufficientNodes(OnionError):
    """Registry holds fewer nodes than a circuit needs (pre-flight)."""

    kind = "InsufficientNodes"
    http_status = 503


class MalformedLayer(OnionError):
    """A layer is missing a required field or its plaintext does not parse."""

    kind = "MalformedLayer"
    http_status = 400


class DecryptionError(OnionError):
    """Ciphertext is not addressed to, or was corrupted for, this node."""

    kind = "DecryptionError"
    http_status = 422


class UnknownNextHop(OnionError):
    """The referenced relay or user is unknown or unreachable."""

    kind = "UnknownNextHop"
    http_status = 502


class ForwardingTimeout(OnionError):
    """The next hop did not answer within the per-hop timeout."""

    kind = "ForwardingTimeout"
    http_status = 504


ERROR_KINDS = {
    cls.kind: cls
    for cls in (InsufficientNodes, MalformedLayer, DecryptionError,
                UnknownNextHop, ForwardingTimeout)
}


def error_from_dict(data) -> OnionError:
    """
    Rebuild an OnionError from its wire form.

    Bodies that are not a structured error (a crashed or foreign service)
    become ``UnknownNextHop``: the hop did not behave like a relay.
    """
    if not isinstance(data, dict):
        return UnknownNextHop(f"Unstructured error response: {data!r}")
    cls = ERROR_KINDS.get(data.get("kind"))
    if cls is None:
        return UnknownNextHop(
            f"Unrecognised error from hop: {data.get('message') or data!r}")
    return cls(str(data.get("message", "")))
