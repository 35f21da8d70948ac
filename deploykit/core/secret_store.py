import os
import base64
import time
from typing import Dict, Any, Iterable

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_DIR = "configs_keys"
_AAD = b"deploykit-server"


def _key_path(key_dir: str, record_id: str) -> str:
    return os.path.join(key_dir, f"{record_id}.key")


def _read_key(key_dir: str, record_id: str) -> bytes:
    p = _key_path(key_dir, record_id)
    if os.path.exists(p):
        with open(p, "rb") as f:
            kb = base64.b64decode(f.read().decode("ascii"))
            if len(kb) in (16, 24, 32):
                return kb
    return b""


def get_or_create_key(record_id: str, key_dir: str = KEY_DIR) -> bytes:
    kb = _read_key(key_dir, record_id)
    if kb:
        return kb
    kb = AESGCM.generate_key(bit_length=256)
    os.makedirs(key_dir, exist_ok=True)
    with open(_key_path(key_dir, record_id), "wb") as f:
        f.write(base64.b64encode(kb))
    return kb


def encrypt_secret(record_id: str, plaintext: str, key_dir: str = KEY_DIR) -> Dict[str, Any]:
    aesgcm = AESGCM(get_or_create_key(record_id, key_dir))
    nonce = os.urandom(12)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), _AAD)
    return {
        "enc": True,
        "alg": "AES-GCM",
        "ts": int(time.time()),
        "nonce_b64": base64.b64encode(nonce).decode("ascii"),
        "ct_b64": base64.b64encode(ct).decode("ascii"),
    }


def decrypt_secret(record_id: str, doc: Any, key_dir: str = KEY_DIR) -> str:
    if isinstance(doc, dict) and doc.get("enc") is True and doc.get("alg") == "AES-GCM":
        aesgcm = AESGCM(get_or_create_key(record_id, key_dir))
        nonce = base64.b64decode(doc["nonce_b64"])
        ct = base64.b64decode(doc["ct_b64"])
        return aesgcm.decrypt(nonce, ct, _AAD).decode("utf-8")
    if doc is None or isinstance(doc, str):
        return doc or ""
    raise RuntimeError("Invalid secret content")


def seal_fields(record_id: str, data: Dict[str, Any], fields: Iterable[str], key_dir: str = KEY_DIR) -> Dict[str, Any]:
    """Return a copy of ``data`` with the named non-empty fields encrypted."""
    out = dict(data)
    for name in fields:
        if out.get(name):
            out[name] = encrypt_secret(record_id, out[name], key_dir)
    return out


def open_fields(record_id: str, data: Dict[str, Any], fields: Iterable[str], key_dir: str = KEY_DIR) -> Dict[str, Any]:
    out = dict(data)
    for name in fields:
        if name in out:
            out[name] = decrypt_secret(record_id, out[name], key_dir)
    return out
