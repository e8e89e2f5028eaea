# medreminder/crypto.py
import logging
import os
import uuid
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import autoclass, on_android

logger = logging.getLogger(__name__)

_CRYPTO_LOCK = RLock()
_ANDROID_KEY_ALIAS = "medreminder_key_v1"


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)


# -------------------------
# Android Keystore (optional) - wraps AES key with RSA keypair stored in AndroidKeyStore
# -------------------------
def _android_keystore_get():
    KeyStore = autoclass("java.security.KeyStore")
    ks = KeyStore.getInstance("AndroidKeyStore")
    ks.load(None)
    return ks


def _android_keystore_ensure_rsa(alias: str):
    ks = _android_keystore_get()
    if ks.containsAlias(alias):
        return
    KeyPairGenerator = autoclass("java.security.KeyPairGenerator")
    KeyProperties = autoclass("android.security.keystore.KeyProperties")
    Builder = autoclass("android.security.keystore.KeyGenParameterSpec$Builder")

    purposes = int(KeyProperties.PURPOSE_ENCRYPT) | int(KeyProperties.PURPOSE_DECRYPT)
    builder = Builder(alias, purposes)
    builder.setDigests([KeyProperties.DIGEST_SHA256])
    builder.setEncryptionPaddings([KeyProperties.ENCRYPTION_PADDING_RSA_OAEP])
    spec = builder.build()

    kpg = KeyPairGenerator.getInstance(KeyProperties.KEY_ALGORITHM_RSA, "AndroidKeyStore")
    kpg.initialize(spec)
    kpg.generateKeyPair()


def _android_keystore_cipher(mode_name: str, key_obj):
    CipherJ = autoclass("javax.crypto.Cipher")
    cipher = CipherJ.getInstance("RSA/ECB/OAEPWithSHA-256AndMGF1Padding")
    cipher.init(getattr(CipherJ, mode_name), key_obj)
    return cipher


def _android_keystore_wrap_key(aes_key: bytes) -> bytes:
    _android_keystore_ensure_rsa(_ANDROID_KEY_ALIAS)
    ks = _android_keystore_get()
    pub = ks.getCertificate(_ANDROID_KEY_ALIAS).getPublicKey()
    return bytes(_android_keystore_cipher("ENCRYPT_MODE", pub).doFinal(aes_key))


def _android_keystore_unwrap_key(wrapped: bytes) -> bytes:
    _android_keystore_ensure_rsa(_ANDROID_KEY_ALIAS)
    ks = _android_keystore_get()
    priv = ks.getEntry(_ANDROID_KEY_ALIAS, None).getPrivateKey()
    return bytes(_android_keystore_cipher("DECRYPT_MODE", priv).doFinal(wrapped))


def _store_wrapped_key(key_path: Path, raw_key: bytes):
    if on_android():
        atomic_write_bytes(key_path, _android_keystore_wrap_key(raw_key))
        logger.info("key stored: android keystore")
    else:
        atomic_write_bytes(key_path, raw_key)
        logger.info("key stored: file")


def _load_wrapped_key(key_path: Path) -> Optional[bytes]:
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    if on_android():
        try:
            k = _android_keystore_unwrap_key(d)
            if len(k) == 32:
                return k
        except Exception:
            logger.exception("key unwrap failed; falling back")
            return None
    return d[:32] if len(d) >= 32 else None


def get_or_create_key(key_path: Path) -> bytes:
    with _CRYPTO_LOCK:
        k = _load_wrapped_key(key_path)
        if k and len(k) == 32:
            return k
        key = AESGCM.generate_key(bit_length=256)
        try:
            _store_wrapped_key(key_path, key)
        except Exception:
            logger.exception("key wrap failed; storing raw key file")
            atomic_write_bytes(key_path, key)
        return key
