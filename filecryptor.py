#!/usr/bin/env python3
# filecryptor.py
#
# Passphrase file encryptor/decryptor.
# Whole-file AES-256-CBC with PKCS7 padding; output lands next to the input as "<path>_Encrypt" / "<path>_Decrypt".
#
# Schemes:
#   raw    - bare ciphertext, XOR-folded passphrase key, all-zero IV (compatible with existing files)
#   sealed - header (salt, scrypt params, random IV) + ciphertext + HMAC-SHA256 tag
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import os
import secrets
import struct
import sys
from dataclasses import dataclass
from enum import IntEnum
from getpass import getpass
from pathlib import Path
from typing import BinaryIO, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt


# =========================
# Constants / Limits
# =========================

KEY_LEN = 32  # AES-256
BLOCK_LEN = 16
ZERO_IV = bytes(BLOCK_LEN)

SEALED_MAGIC = b"FCRS"
SEALED_VERSION = 1
SALT_LEN = 16
SEED_LEN = 64
TAG_LEN = 32

# Password KDF defaults for the sealed scheme (stored in header)
SCRYPT_N = 1 << 15
SCRYPT_R = 8
SCRYPT_P = 1

# Hardened limits for reading sealed headers
MAX_SCRYPT_N = 1 << 20
MAX_SCRYPT_R = 64
MAX_SCRYPT_P = 16
MAX_SCRYPT_MEM = 512 * 1024 * 1024  # mem ~= 128 * r * N bytes

_SEALED_FIXED = struct.Struct("<4sHH")
_SCRYPT_FIELDS = struct.Struct("<III")
SEALED_HEADER_LEN = _SEALED_FIXED.size + SALT_LEN + _SCRYPT_FIELDS.size + BLOCK_LEN

PathLike = Union[str, os.PathLike]


# =========================
# Enums / Data
# =========================

class Mode(IntEnum):
    ENCRYPT = 1
    DECRYPT = 2

    @staticmethod
    def from_cli(name: str) -> "Mode":
        n = name.lower()
        if n == "encrypt":
            return Mode.ENCRYPT
        if n == "decrypt":
            return Mode.DECRYPT
        raise ValueError(f"Unsupported mode: {name}")

    @property
    def label(self) -> str:
        return "Encrypt" if self == Mode.ENCRYPT else "Decrypt"


class Scheme(IntEnum):
    RAW = 1
    SEALED = 2

    @staticmethod
    def from_cli(name: str) -> "Scheme":
        n = name.lower()
        if n == "raw":
            return Scheme.RAW
        if n == "sealed":
            return Scheme.SEALED
        raise ValueError(f"Unsupported scheme: {name}")


@dataclass(frozen=True)
class ScryptParams:
    n: int
    r: int
    p: int


DEFAULT_SCRYPT = ScryptParams(SCRYPT_N, SCRYPT_R, SCRYPT_P)


@dataclass(frozen=True)
class SealedHeader:
    version: int
    salt: bytes
    scrypt_params: ScryptParams
    iv: bytes

    raw: bytes  # header bytes as stored, covered by the tag


@dataclass(frozen=True)
class TransformResult:
    output_path: Path
    mode: Mode
    scheme: Scheme
    bytes_written: int

    @property
    def message(self) -> str:
        return f"{self.mode.label}ed file saved as: {self.output_path}"


# =========================
# Errors
# =========================

class FileCryptorError(Exception):
    pass


class FileOpenError(FileCryptorError):
    pass


class FileReadError(FileCryptorError):
    pass


class FileWriteError(FileCryptorError):
    pass


class DecryptError(FileCryptorError):
    pass


class FormatError(DecryptError):
    pass


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
        os.fsync(f.fileno())
    except OSError:
        pass


def _fsync_dir_best_effort(dir_path: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except OSError:
        pass


def _secure_create_tmp_file(parent_dir: Path, base_name: str) -> Tuple[Path, BinaryIO]:
    """
    Create ".<base_name>.<token>.part" exclusively inside parent_dir.
    The temp file lives beside the final path so os.replace() stays on one filesystem.
    """
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if os.name == "posix":
        flags |= getattr(os, "O_NOFOLLOW", 0)

    for _ in range(128):
        tmp_path = parent_dir / f".{base_name}.{secrets.token_hex(8)}.part"
        try:
            fd = os.open(str(tmp_path), flags, 0o600 if os.name == "posix" else 0o666)
        except FileExistsError:
            continue
        except OSError as ex:
            raise FileWriteError(f"Failed to create temporary file in {parent_dir}: {ex}") from ex
        return tmp_path, os.fdopen(fd, "wb", closefd=True)

    raise FileWriteError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).")


def _atomic_replace_file(tmp_path: Path, final_path: Path) -> None:
    os.replace(tmp_path, final_path)
    _fsync_dir_best_effort(final_path.parent)


def _atomic_link_file(tmp_path: Path, final_path: Path) -> None:
    # link() fails with FileExistsError instead of replacing final_path
    os.link(tmp_path, final_path)
    _unlink_best_effort(tmp_path)
    _fsync_dir_best_effort(final_path.parent)


def _check_key_iv(key: bytes, iv: bytes) -> None:
    if len(key) != KEY_LEN:
        raise ValueError(f"Key must be {KEY_LEN} bytes, got {len(key)}.")
    if len(iv) != BLOCK_LEN:
        raise ValueError(f"IV must be {BLOCK_LEN} bytes, got {len(iv)}.")


# =========================
# KDF / Keys / MAC
# =========================

def derive_key(passphrase: str) -> bytes:
    """
    Fold the UTF-8 passphrase into 32 bytes: byte i is XORed into slot i % 32.

    No salt and no work factor. Kept bit-for-bit so files written by earlier
    releases stay readable; use the sealed scheme for anything new.
    """
    key = bytearray(KEY_LEN)
    for i, b in enumerate(passphrase.encode("utf-8")):
        key[i % KEY_LEN] ^= b
    return bytes(key)


def scrypt_derive(passphrase: str, salt: bytes, params: ScryptParams, length: int) -> bytes:
    if not isinstance(passphrase, str):
        raise TypeError("passphrase must be str")
    kdf = Scrypt(
        salt=salt,
        length=length,
        n=params.n,
        r=params.r,
        p=params.p,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def split_seed(seed: bytes) -> Tuple[bytes, bytes]:
    if len(seed) != SEED_LEN:
        raise ValueError("Internal: seed length mismatch.")
    return seed[:KEY_LEN], seed[KEY_LEN:]


def compute_tag(mac_key: bytes, data: bytes) -> bytes:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(data)
    return h.finalize()


def verify_tag(mac_key: bytes, data: bytes, tag: bytes) -> None:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(data)
    try:
        h.verify(tag)
    except InvalidSignature as ex:
        raise DecryptError("Authentication tag mismatch: wrong passphrase or corrupted file.") from ex


# =========================
# Cipher (AES-256-CBC / PKCS7)
# =========================

def encrypt(data: bytes, key: bytes, iv: bytes) -> bytes:
    _check_key_iv(key, iv)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(data: bytes, key: bytes, iv: bytes) -> bytes:
    _check_key_iv(key, iv)
    if len(data) == 0 or len(data) % BLOCK_LEN != 0:
        raise DecryptError(
            f"Ciphertext length {len(data)} is not a nonzero multiple of the {BLOCK_LEN}-byte block size."
        )

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as ex:
        raise DecryptError("Invalid padding after decryption: wrong passphrase or corrupted file.") from ex


def transform(mode: Mode, key: bytes, iv: bytes, data: bytes) -> bytes:
    if mode == Mode.ENCRYPT:
        return encrypt(data, key, iv)
    if mode == Mode.DECRYPT:
        return decrypt(data, key, iv)
    raise ValueError(f"Unsupported mode: {mode!r}")


# =========================
# Sealed container
# =========================

def _check_scrypt_params(params: ScryptParams) -> None:
    n, r, p = params.n, params.r, params.p
    if n < 2 or (n & (n - 1)) != 0:
        raise FormatError("Invalid scrypt N (must be power of two).")
    if r < 1 or p < 1:
        raise FormatError("Invalid scrypt r/p.")
    if n > MAX_SCRYPT_N:
        raise FormatError(f"Unreasonable scrypt N (max {MAX_SCRYPT_N}).")
    if r > MAX_SCRYPT_R:
        raise FormatError(f"Unreasonable scrypt r (max {MAX_SCRYPT_R}).")
    if p > MAX_SCRYPT_P:
        raise FormatError(f"Unreasonable scrypt p (max {MAX_SCRYPT_P}).")
    mem = 128 * r * n
    if mem > MAX_SCRYPT_MEM:
        raise FormatError(
            f"Unreasonable scrypt parameters (estimated memory {mem} bytes exceeds limit {MAX_SCRYPT_MEM})."
        )


def build_sealed_header(salt: bytes, params: ScryptParams, iv: bytes) -> bytes:
    if len(salt) != SALT_LEN:
        raise ValueError(f"Internal: salt must be {SALT_LEN} bytes.")
    if len(iv) != BLOCK_LEN:
        raise ValueError(f"Internal: IV must be {BLOCK_LEN} bytes.")
    return b"".join(
        [
            _SEALED_FIXED.pack(SEALED_MAGIC, SEALED_VERSION, len(salt)),
            salt,
            _SCRYPT_FIELDS.pack(params.n, params.r, params.p),
            iv,
        ]
    )


def parse_sealed_header(blob: bytes) -> SealedHeader:
    if len(blob) < _SEALED_FIXED.size:
        raise FormatError("File too small to be a sealed container.")
    magic, ver, salt_len = _SEALED_FIXED.unpack_from(blob, 0)

    if magic != SEALED_MAGIC:
        raise FormatError("Not a sealed container (bad magic).")
    if ver != SEALED_VERSION:
        raise FormatError(f"Unsupported sealed container version: {ver}")
    if salt_len != SALT_LEN:
        raise FormatError(f"Unsupported salt length: {salt_len}")
    if len(blob) < SEALED_HEADER_LEN:
        raise FormatError("Truncated sealed header.")

    off = _SEALED_FIXED.size
    salt = blob[off:off + SALT_LEN]
    off += SALT_LEN
    params = ScryptParams(*_SCRYPT_FIELDS.unpack_from(blob, off))
    _check_scrypt_params(params)
    off += _SCRYPT_FIELDS.size
    iv = blob[off:off + BLOCK_LEN]
    off += BLOCK_LEN

    return SealedHeader(
        version=ver,
        salt=salt,
        scrypt_params=params,
        iv=iv,
        raw=blob[:off],
    )


def seal(data: bytes, passphrase: str, params: ScryptParams = DEFAULT_SCRYPT) -> bytes:
    try:
        _check_scrypt_params(params)
    except FormatError as ex:
        raise ValueError(str(ex)) from ex
    salt = os.urandom(SALT_LEN)
    iv = os.urandom(BLOCK_LEN)
    enc_key, mac_key = split_seed(scrypt_derive(passphrase, salt, params, SEED_LEN))

    header = build_sealed_header(salt, params, iv)
    body = header + encrypt(data, enc_key, iv)
    return body + compute_tag(mac_key, body)


def unseal(blob: bytes, passphrase: str) -> bytes:
    header = parse_sealed_header(blob)
    if len(blob) < SEALED_HEADER_LEN + BLOCK_LEN + TAG_LEN:
        raise FormatError("Truncated sealed container (missing ciphertext or tag).")

    body, tag = blob[:-TAG_LEN], blob[-TAG_LEN:]
    enc_key, mac_key = split_seed(scrypt_derive(passphrase, header.salt, header.scrypt_params, SEED_LEN))

    # Tag first: nothing is decrypted unless the whole container authenticates.
    verify_tag(mac_key, body, tag)
    return decrypt(body[len(header.raw):], enc_key, header.iv)


# =========================
# File transform
# =========================

def output_path_for(path: PathLike, mode: Mode) -> Path:
    return Path(f"{os.fspath(path)}_{mode.label}")


def read_input(path: Path) -> bytes:
    try:
        f = open(path, "rb")
    except OSError as ex:
        raise FileOpenError(f"Failed to open input file: {path} ({ex})") from ex

    with f:
        try:
            return f.read()
        except OSError as ex:
            raise FileReadError(f"Failed to read input file: {path} ({ex})") from ex


def write_output(path: Path, data: bytes, overwrite: bool = True) -> None:
    """
    Write data to path via a temp file in the same directory.
    The temp file is published with os.replace(), or with os.link() when
    overwrite is False so an existing path is never clobbered.
    On failure the temp file is removed and any existing file at path is untouched.
    """
    if not overwrite and os.path.lexists(path):
        raise FileWriteError(f"Refusing to overwrite existing file: {path}")

    parent = path.parent
    if not parent.is_dir():
        raise FileWriteError(f"Output directory does not exist: {parent}")

    tmp_path, tmp_f = _secure_create_tmp_file(parent, path.name)
    try:
        with tmp_f:
            tmp_f.write(data)
            _fsync_fileobj_best_effort(tmp_f)
        if overwrite:
            _atomic_replace_file(tmp_path, path)
        else:
            _atomic_link_file(tmp_path, path)
    except FileExistsError as ex:
        _unlink_best_effort(tmp_path)
        raise FileWriteError(f"Refusing to overwrite existing file: {path}") from ex
    except OSError as ex:
        _unlink_best_effort(tmp_path)
        raise FileWriteError(f"Failed to write output file: {path} ({ex})") from ex


def transform_bytes(data: bytes, passphrase: str, mode: Mode, scheme: Scheme = Scheme.RAW) -> bytes:
    if scheme == Scheme.RAW:
        return transform(mode, derive_key(passphrase), ZERO_IV, data)
    if scheme == Scheme.SEALED:
        return seal(data, passphrase) if mode == Mode.ENCRYPT else unseal(data, passphrase)
    raise ValueError(f"Unsupported scheme: {scheme!r}")


def process(
    path: PathLike,
    passphrase: str,
    mode: Mode,
    *,
    scheme: Scheme = Scheme.RAW,
    overwrite: bool = True,
) -> TransformResult:
    in_path = Path(path)
    out_path = output_path_for(in_path, mode)

    data = read_input(in_path)
    result = transform_bytes(data, passphrase, mode, scheme)
    write_output(out_path, result, overwrite=overwrite)

    return TransformResult(
        output_path=out_path,
        mode=mode,
        scheme=scheme,
        bytes_written=len(result),
    )


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="filecryptor",
        description=(
            "Encrypt/decrypt a single file with a passphrase (AES-256-CBC, PKCS7).\n"
            "Output is written next to the input as <file>_Encrypt or <file>_Decrypt."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    g = p.add_mutually_exclusive_group()
    g.add_argument("--encrypt", action="store_true", help="Encrypt (default).")
    g.add_argument("--decrypt", action="store_true", help="Decrypt.")

    p.add_argument("--file", required=True, help="Input file path.")
    p.add_argument("--password", default=None, help="Passphrase (if omitted, will prompt; empty is allowed).")
    p.add_argument(
        "--scheme",
        choices=["raw", "sealed"],
        default="raw",
        help=(
            "raw: bare ciphertext, zero IV, XOR-folded key (default; reads/writes existing files).\n"
            "sealed: random IV, scrypt-derived key, HMAC-SHA256 tag."
        ),
    )
    p.add_argument(
        "--no-overwrite",
        action="store_true",
        help="Refuse to replace an existing output file.",
    )

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    mode = Mode.from_cli("decrypt" if args.decrypt else "encrypt")
    password = args.password if args.password is not None else getpass("Password: ")

    result = process(
        Path(args.file),
        password,
        mode,
        scheme=Scheme.from_cli(args.scheme),
        overwrite=not args.no_overwrite,
    )
    print(result.message)
    return 0


def run(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return main(argv)
    except FileCryptorError as ex:
        eprint(f"Error: {ex}")
        return 2
    except KeyboardInterrupt:
        eprint("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(run())
