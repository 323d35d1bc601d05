#!/usr/bin/env python3
# ctr_encryptor.py
#
# Encrypt/decrypt a single file with AES-128 in CTR mode.
# The key and IV are raw 16-byte files; missing ones are generated on encrypt and saved for reuse.
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import os
import secrets
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Sequence, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

__version__ = "1.0.0"


# =========================
# Constants / Config
# =========================

AES_BLOCK_SIZE = 16
AES_KEY_SIZES = (16, 24, 32)


@dataclass(frozen=True)
class CipherParams:
    """Sizes (in bytes) the provisioner and the cipher engine validate against."""

    key_length: int = 16
    block_size: int = AES_BLOCK_SIZE

    def __post_init__(self) -> None:
        if self.block_size != AES_BLOCK_SIZE:
            raise ValueError(f"AES block size is {AES_BLOCK_SIZE} bytes, got {self.block_size}")
        if self.key_length not in AES_KEY_SIZES:
            raise ValueError(f"Unsupported AES key length: {self.key_length} bytes")


DEFAULT_PARAMS = CipherParams()


@dataclass(frozen=True)
class KeyMaterial:
    key: bytes
    iv: bytes
    key_generated: bool = False
    iv_generated: bool = False

    @property
    def generated(self) -> bool:
        return self.key_generated or self.iv_generated


# =========================
# Errors
# =========================

class CtrEncryptorError(Exception):
    pass


class RngError(CtrEncryptorError):
    pass


class FileIoError(CtrEncryptorError):
    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidLength(CtrEncryptorError):
    def __init__(self, slot: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Invalid {slot} length. Should be {expected * 8} bits long (got {actual} bytes)"
        )
        self.slot = slot
        self.expected = expected
        self.actual = actual


class CipherSetupError(CtrEncryptorError):
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


def _create_tmp_beside(path: Path, mode: int = 0o600) -> Tuple[Path, BinaryIO]:
    """Exclusively create a hidden temp file next to `path` (same filesystem, so os.replace is atomic)."""
    parent = path.parent
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0)

    for _ in range(128):
        tmp_path = parent / f".{path.name}.{secrets.token_hex(8)}.tmp"
        try:
            fd = os.open(str(tmp_path), flags, mode)
        except FileExistsError:
            continue
        return tmp_path, os.fdopen(fd, "wb", closefd=True)

    raise FileExistsError(f"Failed to create a unique temporary file in {parent} (too many collisions).")


# =========================
# Storage
# =========================

def read_slot(path: Path) -> bytes:
    """Raw read; any OSError propagates so callers can classify it."""
    return Path(path).read_bytes()


def ensure_replaceable(path: Path) -> None:
    """
    os.replace only needs write access to the directory, so check the file
    itself: an existing destination we could not open for writing stays untouched.
    """
    path = Path(path)
    if os.path.lexists(path) and not os.access(path, os.W_OK):
        raise FileIoError(f"Refusing to replace {path}: file is not writable", path)


def write_slot(path: Path, data: bytes, *, private: bool = False) -> None:
    """
    Atomically replace `path` with `data`.

    `private` files are created 0600. Other files are created 0666 minus the
    umask, or keep the mode of the file they replace.
    """
    path = Path(path)
    ensure_replaceable(path)
    tmp_path: Optional[Path] = None
    try:
        tmp_path, tmp_f = _create_tmp_beside(path, 0o600 if private else 0o666)
        with tmp_f:
            tmp_f.write(data)
            _fsync_fileobj_best_effort(tmp_f)
        if not private and path.exists():
            os.chmod(tmp_path, stat.S_IMODE(path.stat().st_mode))
        os.replace(tmp_path, path)
    except OSError as ex:
        if tmp_path is not None:
            _unlink_best_effort(tmp_path)
        raise FileIoError(f"Failed to write {path} ({ex})", path) from ex
    _fsync_dir_best_effort(path.parent)


def read_input(path: Path) -> bytes:
    try:
        return read_slot(path)
    except OSError as ex:
        raise FileIoError(f"Failed to read input file: {path} ({ex})", Path(path)) from ex


# =========================
# Entropy / Generator
# =========================

class EntropySource:
    """OS CSPRNG (kernel DRBG reseeded from the entropy pool)."""

    def __init__(self, urandom: Callable[[int], bytes] = os.urandom) -> None:
        self._urandom = urandom

    def generate(self, n: int) -> bytes:
        if n < 0:
            raise ValueError("Cannot generate a negative number of bytes.")
        try:
            out = self._urandom(n)
        except (OSError, NotImplementedError) as ex:
            raise RngError(f"Random generator failure: {ex}") from ex
        if len(out) != n:
            raise RngError(f"Random generator returned {len(out)} bytes, expected {n}")
        return out


_ENTROPY = EntropySource()


def generate_material(n: int, source: Optional[EntropySource] = None) -> bytes:
    return (source or _ENTROPY).generate(n)


# =========================
# Provisioning
# =========================

AbsencePolicy = Callable[[OSError], bool]
Reader = Callable[[Path], bytes]


def any_read_error_is_absent(ex: OSError) -> bool:
    return True


def only_missing_is_absent(ex: OSError) -> bool:
    return isinstance(ex, FileNotFoundError)


def validate_material(key: bytes, iv: bytes, params: CipherParams = DEFAULT_PARAMS) -> None:
    if len(key) != params.key_length:
        raise InvalidLength("key", params.key_length, len(key))
    if len(iv) != params.block_size:
        raise InvalidLength("IV", params.block_size, len(iv))


def _load_or_generate(
    slot: str,
    path: Path,
    size: int,
    *,
    reader: Reader,
    absent: AbsencePolicy,
    source: Optional[EntropySource],
    notify: Optional[Callable[[str], None]],
) -> Tuple[bytes, bool]:
    try:
        return reader(path), False
    except OSError as ex:
        if not absent(ex):
            raise FileIoError(f"Failed to read {slot} file: {path} ({ex})", Path(path)) from ex
    if notify is not None:
        notify(f"{slot} doesn't exist. Generating it.")
    return generate_material(size, source), True


def provision_encrypt(
    key_path: Path,
    iv_path: Path,
    *,
    params: CipherParams = DEFAULT_PARAMS,
    absent: AbsencePolicy = any_read_error_is_absent,
    reader: Reader = read_slot,
    source: Optional[EntropySource] = None,
    notify: Optional[Callable[[str], None]] = eprint,
) -> KeyMaterial:
    """
    Load the key and IV, generating whichever one is absent.

    `absent` decides which read failures count as "absent"; the default treats
    every read error that way. A read failure it rejects becomes FileIoError.
    """
    key, key_generated = _load_or_generate(
        "Key", key_path, params.key_length,
        reader=reader, absent=absent, source=source, notify=notify,
    )
    iv, iv_generated = _load_or_generate(
        "IV", iv_path, params.block_size,
        reader=reader, absent=absent, source=source, notify=notify,
    )
    validate_material(key, iv, params)
    return KeyMaterial(key, iv, key_generated, iv_generated)


def provision_decrypt(
    key_path: Path,
    iv_path: Path,
    *,
    params: CipherParams = DEFAULT_PARAMS,
    reader: Reader = read_slot,
) -> KeyMaterial:
    material = []
    for slot, path in (("key", key_path), ("IV", iv_path)):
        try:
            material.append(reader(path))
        except OSError as ex:
            raise FileIoError(f"Failed to read {slot} file: {path} ({ex})", Path(path)) from ex
    key, iv = material
    validate_material(key, iv, params)
    return KeyMaterial(key, iv)


def persist_material(material: KeyMaterial, key_path: Path, iv_path: Path) -> None:
    # check both before writing either, so a refused IV never leaves a replaced key behind
    ensure_replaceable(key_path)
    ensure_replaceable(iv_path)
    write_slot(key_path, material.key, private=True)
    write_slot(iv_path, material.iv, private=True)


# =========================
# Buffer sizing
# =========================

def padded_size(data_len: int, block_size: int = AES_BLOCK_SIZE) -> int:
    # next block boundary at or above data_len, plus one block of headroom for update_into
    return -(-data_len // block_size) * block_size + block_size


def truncate_output(buf: bytearray, data_len: int) -> bytes:
    return bytes(buf[:data_len])


# =========================
# CTR engine
# =========================

def transform(key: bytes, iv: bytes, data: bytes, params: CipherParams = DEFAULT_PARAMS) -> bytes:
    """
    AES-CTR keystream XOR. Keystream block i is AES_K(IV + i), with a
    big-endian 128-bit counter that wraps. Encrypt and decrypt are the same call.
    """
    validate_material(key, iv, params)
    try:
        ctx = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
        raise CipherSetupError(f"AES-CTR rejected key/IV: {ex}") from ex

    buf = bytearray(padded_size(len(data), params.block_size))
    written = ctx.update_into(data, buf)
    tail = ctx.finalize()
    if tail or written != len(data):
        raise CipherSetupError(
            f"AES-CTR produced {written + len(tail)} bytes for {len(data)} bytes of input"
        )
    return truncate_output(buf, len(data))


encrypt = transform
decrypt = transform


# =========================
# Orchestration
# =========================

def run(
    input_path: Path,
    output_path: Path,
    key_path: Path,
    iv_path: Path,
    *,
    is_encryption: bool,
    params: CipherParams = DEFAULT_PARAMS,
    absent: AbsencePolicy = any_read_error_is_absent,
    source: Optional[EntropySource] = None,
    notify: Optional[Callable[[str], None]] = eprint,
) -> KeyMaterial:
    data = read_input(input_path)

    if is_encryption:
        material = provision_encrypt(
            key_path, iv_path, params=params, absent=absent, source=source, notify=notify,
        )
    else:
        material = provision_decrypt(key_path, iv_path, params=params)

    output = transform(material.key, material.iv, data, params)

    if is_encryption:
        persist_material(material, key_path, iv_path)

    write_slot(output_path, output)
    return material


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ctr_encryptor.py",
        description=(
            "Encrypt/decrypt a file with AES-128-CTR.\n"
            "On encrypt, a missing key or IV file is generated and saved for later decryption."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("input_file", type=Path, help="Path to input file.")
    p.add_argument("output_file", type=Path, help="Path to output file.")
    p.add_argument("key_file", type=Path, help="Path to key file (raw 16 bytes).")
    p.add_argument("iv_file", type=Path, help="Path to IV file (raw 16 bytes).")

    p.add_argument(
        "-e", "--encrypt",
        dest="is_encryption",
        action="store_true",
        help="Encrypt the input file. Without this flag the input is decrypted.",
    )
    p.add_argument(
        "--strict-missing",
        action="store_true",
        help=(
            "Encrypt-only: generate a key/IV only when its file does not exist.\n"
            "Other read errors (permissions, disk errors) abort instead."
        ),
    )
    p.add_argument("-q", "--quiet", action="store_true", help="Do not report generated key/IV.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.strict_missing and not args.is_encryption:
        raise CtrEncryptorError("--strict-missing is encrypt-only.")

    run(
        args.input_file,
        args.output_file,
        args.key_file,
        args.iv_file,
        is_encryption=args.is_encryption,
        absent=only_missing_is_absent if args.strict_missing else any_read_error_is_absent,
        notify=None if args.quiet else eprint,
    )
    return 0


def cli(argv: Optional[Sequence[str]] = None) -> None:
    try:
        raise SystemExit(main(argv))
    except CtrEncryptorError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    cli()
