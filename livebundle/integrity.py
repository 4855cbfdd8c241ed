# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Integrity Verifier

Checksums and end-to-end decryption for bundle content.

Encryption scheme:
  - Session key format: base64(IV):base64(RSA-encrypted AES key)
  - The AES key is encrypted with the publisher's RSA private key
    (PKCS#1 v1.5), so it is recovered with the configured public key
  - Content and encrypted checksums use AES-CBC with PKCS7 padding
  - Files of a per-file manifest may additionally be Brotli-compressed

Nothing in here raises for bad input: parse and decrypt failures are
logged and reported as None/False so callers can decide what to do.
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import brotli
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536  # 64KB reads for file hashing


@dataclass
class SessionKey:
    """Decrypted session key material."""
    iv: bytes
    aes_key: bytes


def digest(data: bytes) -> str:
    """SHA-256 of a byte string as lower-case hex."""
    return hashlib.sha256(data).hexdigest()


def file_checksum(path: Union[str, Path]) -> str:
    """Stream a file through SHA-256. Raises OSError if it cannot be read."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def verify(path: Union[str, Path], expected_checksum: str) -> bool:
    """Compare a file's checksum against an expected hex digest, ignoring case."""
    try:
        actual = file_checksum(path)
    except OSError as e:
        logger.warning("Cannot checksum %s: %s", path, e)
        return False
    return actual.lower() == expected_checksum.strip().lower()


def tree_digest(directory: Union[str, Path]) -> str:
    """
    Deterministic digest of a directory tree.

    Hashes every regular file's relative POSIX path together with its own
    SHA-256, in sorted path order, so the result does not depend on
    filesystem enumeration order or timestamps.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Not a directory: {root}")

    entries = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_file():
                entries.append((full.relative_to(root).as_posix(), full))

    h = hashlib.sha256()
    for rel, full in sorted(entries):
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(file_checksum(full).encode("ascii"))
        h.update(b"\n")
    return h.hexdigest()


def generate_bundle_id() -> str:
    """Random bundle id: 16 bytes as hex."""
    return secrets.token_hex(16)


class IntegrityVerifier:
    """
    Holds the publisher public key and performs session-key decryption.

    Without a configured public key every decryption attempt fails.
    """

    def __init__(self, public_key: Optional[str] = None):
        self._public_key_pem: Optional[str] = None
        self._public_key: Optional[rsa.RSAPublicKey] = None
        self.set_public_key(public_key)

    # =========================================================================
    # KEY MANAGEMENT
    # =========================================================================

    def set_public_key(self, key: Optional[str]) -> None:
        self._public_key_pem = key
        self._public_key = None
        if not key:
            return
        try:
            loaded = serialization.load_pem_public_key(key.encode("utf-8"))
        except (ValueError, TypeError) as e:
            logger.warning("Invalid public key, decryption disabled: %s", e)
            return
        if not isinstance(loaded, rsa.RSAPublicKey):
            logger.warning("Public key is not RSA, decryption disabled")
            return
        self._public_key = loaded

    def get_public_key(self) -> Optional[str]:
        return self._public_key_pem

    @property
    def has_public_key(self) -> bool:
        return self._public_key is not None

    # =========================================================================
    # SESSION KEYS
    # =========================================================================

    def parse_session_key(self, session_key: str) -> Optional[SessionKey]:
        """Parse and decrypt a session key string; None when no verdict."""
        if self._public_key is None:
            logger.warning("No public key set for decryption")
            return None

        parts = session_key.split(":")
        if len(parts) != 2:
            logger.error("Invalid session key format: expected IV:encrypted_key")
            return None

        try:
            iv = base64.b64decode(parts[0], validate=True)
            encrypted_key = base64.b64decode(parts[1], validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error("Invalid base64 in session key: %s", e)
            return None

        try:
            aes_key = self._public_key.recover_data_from_signature(
                encrypted_key, padding.PKCS1v15(), None
            )
        except (InvalidSignature, ValueError) as e:
            logger.error("Failed to decrypt session key: %s", e)
            return None

        return SessionKey(iv=iv, aes_key=aes_key)

    # =========================================================================
    # CONTENT
    # =========================================================================

    def decrypt_content(self, data: bytes, key: SessionKey) -> Optional[bytes]:
        """AES-CBC decrypt with PKCS7 unpadding. None on any failure."""
        try:
            cipher = Cipher(algorithms.AES(key.aes_key), modes.CBC(key.iv))
            decryptor = cipher.decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            logger.error("Failed to decrypt content: %s", e)
            return None

    def decrypt_checksum(self, encrypted_checksum: str, session_key: str) -> Optional[str]:
        """Decrypt a base64 checksum delivered alongside an encrypted bundle."""
        key = self.parse_session_key(session_key)
        if key is None:
            return None
        try:
            data = base64.b64decode(encrypted_checksum, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error("Invalid base64 checksum: %s", e)
            return None
        decrypted = self.decrypt_content(data, key)
        if decrypted is None:
            return None
        try:
            return decrypted.decode("utf-8").strip().lower()
        except UnicodeDecodeError:
            logger.error("Decrypted checksum is not text")
            return None

    def decrypt_bytes(self, data: bytes, session_key: str) -> Optional[bytes]:
        """Decrypt a manifest file and undo Brotli compression when present."""
        key = self.parse_session_key(session_key)
        if key is None:
            return None
        decrypted = self.decrypt_content(data, key)
        if decrypted is None:
            return None
        return try_decompress(decrypted)

    def decrypt_file(self, path: Union[str, Path], session_key: str) -> bool:
        """Decrypt a file in place. Returns False and leaves it untouched on failure."""
        path = Path(path)
        try:
            encrypted = path.read_bytes()
        except OSError as e:
            logger.error("Failed to read %s for decryption: %s", path, e)
            return False

        key = self.parse_session_key(session_key)
        if key is None:
            return False
        decrypted = self.decrypt_content(encrypted, key)
        if decrypted is None:
            return False

        try:
            temp_path = path.with_name(path.name + ".tmp")
            temp_path.write_bytes(decrypted)
            temp_path.replace(path)
        except OSError as e:
            logger.error("Failed to write decrypted %s: %s", path, e)
            return False
        return True


def try_decompress(data: bytes) -> bytes:
    """Brotli-decompress if possible, otherwise hand the data back unchanged."""
    try:
        decompressed = brotli.decompress(data)
    except brotli.error:
        return data
    # A one-byte empty stream header can prefix arbitrary plain data
    if not decompressed and len(data) > 1:
        return data
    return decompressed
