# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
Shared fixtures for the LiveBundle test suite.
"""

import base64
import io
import os
import tempfile
import zipfile
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


# =============================================================================
# FILESYSTEM
# =============================================================================

@pytest.fixture
def data_dir():
    """Temporary per-installation data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_zip(files, prefix=""):
    """Build a zip archive in memory from {relative_path: bytes}."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(prefix + name, content)
    return buf.getvalue()


def write_bundle_dir(root, files=None):
    """Create an extracted bundle directory on disk."""
    files = files or {"www/index.html": b"<html>bundle</html>"}
    for name, content in files.items():
        target = Path(root) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    return Path(root)


# =============================================================================
# VIRTUAL TIME
# =============================================================================

class FakeTimer:
    def __init__(self, scheduler, due, callback):
        self._scheduler = scheduler
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Drop-in watchdog scheduler driven by advance() instead of a clock."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(self, self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled and t.due is not None]

    def advance(self, seconds):
        self.now += seconds
        for timer in list(self.timers):
            if not timer.cancelled and timer.due is not None and timer.due <= self.now:
                timer.due = None
                timer.callback()


@pytest.fixture
def scheduler():
    return FakeScheduler()


# =============================================================================
# CRYPTO
# =============================================================================

@pytest.fixture(scope="session")
def rsa_keypair():
    """RSA key pair; returns (private_key, public_pem)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_key, public_pem


def private_encrypt(private_key, data):
    """RSA PKCS#1 v1.5 type 1 encryption with the private key."""
    numbers = private_key.private_numbers()
    n = numbers.public_numbers.n
    k = (n.bit_length() + 7) // 8
    padded = b"\x00\x01" + b"\xff" * (k - len(data) - 3) + b"\x00" + data
    c = pow(int.from_bytes(padded, "big"), numbers.d, n)
    return c.to_bytes(k, "big")


def aes_encrypt(data, key, iv):
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def make_session_key(private_key):
    """Returns (session_key_string, aes_key, iv)."""
    aes_key = os.urandom(16)
    iv = os.urandom(16)
    encrypted_key = private_encrypt(private_key, aes_key)
    session_key = "%s:%s" % (
        base64.b64encode(iv).decode("ascii"),
        base64.b64encode(encrypted_key).decode("ascii"),
    )
    return session_key, aes_key, iv
