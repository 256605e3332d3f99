"""
Onion Routing — Tor-style layered encryption for message circuits.

How it works:
  1. Each relay has a public/private key pair (X25519).
  2. The sender fetches relay public keys from the registry.
  3. The sender builds the onion from the inside out:
     - Innermost: a Delivery record naming the destination user, holding the
       message encrypted under a content session key sealed for the exit node
     - Exit wrapper: a "final" layer whose payload is the Delivery
     - Every earlier hop: a "relay" layer naming the next hop, whose payload
       is the next hop's layer
  4. Each relay opens its session key, decrypts its payload, learns only its
     next hop, and forwards. The exit also opens the Delivery and hands the
     plaintext to the destination's inbox.

Encryption scheme:
  - Session keys: 32 random bytes, AES-256-GCM, one per layer, never reused
  - Sealing a session key for a relay: fresh ephemeral X25519 key, HKDF-SHA256
    shared key, AES-256-GCM. Output is ephemeral_pub || nonce || ciphertext.
  - All binary fields travel as base64 strings inside JSON

Wire layers:
    {"type": "relay", "nextDestination": <node id>,
     "encryptedSessionKey": <b64>, "encryptedMessage": <b64>}
    {"type": "final", "encryptedSessionKey": <b64>, "encryptedMessage": <b64>}

Delivery (plaintext of a final layer's payload):
    {"destinationUserId": <user id>,
     "encryptedSessionKey": <b64>, "encryptedMessage": <b64>}
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, PublicFormat,
)

import config
from network.errors import DecryptionError, MalformedLayer

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


# --- Key Management ---

def generate_keypair() -> tuple[X25519PrivateKey, X25519PublicKey]:
    """Generate a new X25519 key pair for a relay."""
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def public_key_to_bytes(key: X25519PublicKey) -> bytes:
    """Serialize a public key to raw bytes (32 bytes)."""
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def public_key_from_bytes(data: bytes) -> X25519PublicKey:
    """Deserialize a public key from raw bytes."""
    return X25519PublicKey.from_public_bytes(data)


def private_key_to_bytes(key: X25519PrivateKey) -> bytes:
    """Serialize a private key to raw bytes (32 bytes)."""
    return key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())


def private_key_from_bytes(data: bytes) -> X25519PrivateKey:
    """Deserialize a private key from raw bytes."""
    return X25519PrivateKey.from_private_bytes(data)


def public_key_to_b64(key: X25519PublicKey) -> str:
    return base64.b64encode(public_key_to_bytes(key)).decode()


def public_key_from_b64(data: str) -> X25519PublicKey:
    """Parse a registry-format public key. Raises ValueError if invalid."""
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"public key is not valid base64: {e}") from e
    if len(raw) != KEY_SIZE:
        raise ValueError(f"public key must be {KEY_SIZE} bytes, got {len(raw)}")
    return public_key_from_bytes(raw)


def private_key_to_b64(key: X25519PrivateKey) -> str:
    return base64.b64encode(private_key_to_bytes(key)).decode()


# --- Key Exchange & Encryption ---

def derive_shared_key(private_key: X25519PrivateKey, peer_public_key: X25519PublicKey) -> bytes:
    """
    Derive a 256-bit AES key from an X25519 key exchange.
    Uses HKDF for proper key derivation.
    """
    shared_secret = private_key.exchange(peer_public_key)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=config.SEAL_INFO,
    ).derive(shared_secret)


def encrypt(key: bytes, plaintext: bytes) -> bytes:
    """AES-256-GCM encrypt. Returns nonce + ciphertext (nonce is 12 bytes)."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(key: bytes, data: bytes) -> bytes:
    """AES-256-GCM decrypt. Expects nonce (12 bytes) + ciphertext."""
    return AESGCM(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)


def seal(public_key: X25519PublicKey, plaintext: bytes) -> bytes:
    """
    Encrypt ``plaintext`` so only the holder of ``public_key``'s private half
    can read it. A fresh ephemeral key is generated per call.
    """
    eph_priv, eph_pub = generate_keypair()
    shared_key = derive_shared_key(eph_priv, public_key)
    return public_key_to_bytes(eph_pub) + encrypt(shared_key, plaintext)


def open_sealed(private_key: X25519PrivateKey, sealed: bytes) -> bytes:
    """
    Open a blob produced by ``seal``.

    Raises DecryptionError when the blob was sealed for another key or was
    tampered with. AES-GCM authentication guarantees a wrong recipient never
    gets garbage plaintext back.
    """
    if len(sealed) < KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise DecryptionError(f"Sealed blob too short: {len(sealed)} bytes")
    try:
        eph_pub = public_key_from_bytes(sealed[:KEY_SIZE])
        shared_key = derive_shared_key(private_key, eph_pub)
        return decrypt(shared_key, sealed[KEY_SIZE:])
    except InvalidTag as e:
        raise DecryptionError("Sealed blob is not addressed to this node") from e
    except ValueError as e:
        raise DecryptionError(f"Invalid sealed blob: {e}") from e


# --- Session Keys ---

def generate_session_key() -> bytes:
    """Fresh AES-256 key for exactly one layer."""
    return os.urandom(KEY_SIZE)


def export_session_key(key: bytes) -> str:
    return base64.b64encode(key).decode()


def _b64decode(data: str, what: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecryptionError(f"{what} is not valid base64") from e


def seal_session_key(public_key: X25519PublicKey, key: bytes) -> str:
    """Seal a session key for one relay. Returns base64."""
    return base64.b64encode(seal(public_key, key)).decode()


def open_session_key(private_key: X25519PrivateKey, sealed_b64: str) -> bytes:
    key = open_sealed(private_key, _b64decode(sealed_b64, "encryptedSessionKey"))
    if len(key) != KEY_SIZE:
        raise DecryptionError(f"Session key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt_payload(key: bytes, plaintext: bytes) -> str:
    return base64.b64encode(encrypt(key, plaintext)).decode()


def decrypt_payload(key: bytes, ciphertext_b64: str) -> bytes:
    data = _b64decode(ciphertext_b64, "encryptedMessage")
    try:
        return decrypt(key, data)
    except (InvalidTag, ValueError) as e:
        raise DecryptionError("Payload does not decrypt under its session key") from e


# --- Onion Layer Format ---

@dataclass(frozen=True)
class RelayLayer:
    """Layer for a hop that forwards: its payload is the next hop's layer."""
    next_hop: int
    session_key_ciphertext: str
    payload_ciphertext: str

    def to_dict(self) -> dict:
        return {
            "type": "relay",
            "nextDestination": self.next_hop,
            "encryptedSessionKey": self.session_key_ciphertext,
            "encryptedMessage": self.payload_ciphertext,
        }


@dataclass(frozen=True)
class FinalLayer:
    """Layer for the exit hop: its payload is the Delivery record."""
    session_key_ciphertext: str
    payload_ciphertext: str

    def to_dict(self) -> dict:
        return {
            "type": "final",
            "encryptedSessionKey": self.session_key_ciphertext,
            "encryptedMessage": self.payload_ciphertext,
        }


@dataclass(frozen=True)
class Delivery:
    """Innermost record: who gets the message, and the message ciphertext."""
    destination_user_id: int
    session_key_ciphertext: str
    content_ciphertext: str

    def to_dict(self) -> dict:
        return {
            "destinationUserId": self.destination_user_id,
            "encryptedSessionKey": self.session_key_ciphertext,
            "encryptedMessage": self.content_ciphertext,
        }


OnionLayer = Union[RelayLayer, FinalLayer]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_str(data: dict, field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise MalformedLayer(f"Missing or empty '{field}'")
    return value


def parse_layer(data) -> OnionLayer:
    """Validate a wire layer and return its variant. Raises MalformedLayer."""
    if not isinstance(data, dict):
        raise MalformedLayer(f"Layer must be a JSON object, got {type(data).__name__}")
    layer_type = data.get("type")
    session_key = _require_str(data, "encryptedSessionKey")
    payload = _require_str(data, "encryptedMessage")

    if layer_type == "relay":
        next_hop = data.get("nextDestination")
        if not _is_int(next_hop):
            raise MalformedLayer("Relay layer requires an integer 'nextDestination'")
        return RelayLayer(next_hop, session_key, payload)
    if layer_type == "final":
        if data.get("nextDestination") is not None:
            raise MalformedLayer("Final layer must not carry 'nextDestination'")
        return FinalLayer(session_key, payload)
    raise MalformedLayer(f"Unknown layer type: {layer_type!r}")


def parse_delivery(data) -> Delivery:
    if not isinstance(data, dict):
        raise MalformedLayer("Delivery must be a JSON object")
    user_id = data.get("destinationUserId")
    if not _is_int(user_id):
        raise MalformedLayer("Delivery requires an integer 'destinationUserId'")
    return Delivery(
        destination_user_id=user_id,
        session_key_ciphertext=_require_str(data, "encryptedSessionKey"),
        content_ciphertext=_require_str(data, "encryptedMessage"),
    )


def _serialize(obj) -> bytes:
    return json.dumps(obj.to_dict(), separators=(",", ":")).encode()


def _deserialize(plaintext: bytes):
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedLayer(f"Decrypted payload is not JSON: {e}") from e


# --- Building ---

def build_onion(hop_ids: list[int], hop_public_keys: list[X25519PublicKey],
                message: str, destination_user_id: int) -> OnionLayer:
    """
    Build the onion for a circuit.

    Args:
        hop_ids: Ordered node ids [entry, ..., exit]
        hop_public_keys: Corresponding public keys for each node
        message: Plaintext for the destination
        destination_user_id: User whose inbox receives the message

    Returns:
        The outermost layer, to be sent to the entry node.
    """
    if len(hop_ids) != len(hop_public_keys) or not hop_ids:
        raise ValueError("hop_ids and hop_public_keys must be non-empty and aligned")

    exit_key = hop_public_keys[-1]

    # Innermost: content sealed for the exit node, which performs the final
    # decryption before handing plaintext to the inbox.
    content_key = generate_session_key()
    inner = Delivery(
        destination_user_id=destination_user_id,
        session_key_ciphertext=seal_session_key(exit_key, content_key),
        content_ciphertext=encrypt_payload(content_key, message.encode("utf-8")),
    )

    # Build layers from exit to entry
    n = len(hop_ids)
    for i in range(n - 1, -1, -1):
        session_key = generate_session_key()
        sealed_key = seal_session_key(hop_public_keys[i], session_key)
        payload = encrypt_payload(session_key, _serialize(inner))
        if i == n - 1:
            inner = FinalLayer(sealed_key, payload)
        else:
            inner = RelayLayer(hop_ids[i + 1], sealed_key, payload)

    return inner


# --- Peeling ---

@dataclass(frozen=True)
class PeeledLayer:
    """Result of removing one layer: what was inside, and its plaintext."""
    inner: Union[RelayLayer, FinalLayer, Delivery]
    plaintext: str


def peel_onion(private_key: X25519PrivateKey, layer: OnionLayer) -> PeeledLayer:
    """
    Peel one layer off the onion (called by a relay).

    A relay layer yields the next hop's layer; a final layer yields the
    Delivery record. DecryptionError if the layer is not for this key,
    MalformedLayer if the decrypted payload does not parse.
    """
    session_key = open_session_key(private_key, layer.session_key_ciphertext)
    plaintext = decrypt_payload(session_key, layer.payload_ciphertext)
    data = _deserialize(plaintext)

    if isinstance(layer, RelayLayer):
        inner = parse_layer(data)
    else:
        inner = parse_delivery(data)
    return PeeledLayer(inner=inner, plaintext=plaintext.decode("utf-8"))


def open_delivery(private_key: X25519PrivateKey, delivery: Delivery) -> str:
    """Recover the user-facing message from a Delivery (exit node only)."""
    content_key = open_session_key(private_key, delivery.session_key_ciphertext)
    content = decrypt_payload(content_key, delivery.content_ciphertext)
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedLayer("Delivered content is not UTF-8 text") from e
