#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
write-on-diff: Diff-Aware Write Primitives
==========================================

Write bytes, single files, or whole directory trees only when the content
actually changed. Destinations whose content already matches are never opened
for writing, so their modification times stay put and mtime-driven tools
(make, ninja, file watchers, sync daemons) don't see spurious updates.

Quick Start:
-----------
    >>> from write_on_diff import write_bytes_if_different, WriteOutcome
    >>>
    >>> write_bytes_if_different("generated.h", b"#define ANSWER 42\\n")
    <WriteOutcome.CREATED: 'created'>
    >>> write_bytes_if_different("generated.h", b"#define ANSWER 42\\n")
    <WriteOutcome.UNCHANGED: 'unchanged'>
    >>>
    >>> report = write_dir_if_different("build/assets", "public/assets")
    >>> print(f"{report.num_updated} updated, {report.num_unchanged} untouched")

How "unchanged" is decided:
--------------------------
    1. Destination missing            -> write (CREATED)
    2. Destination size differs       -> write (UPDATED), no hashing needed
    3. Same size, fingerprints differ -> write (UPDATED)
    4. Same size, fingerprints equal  -> skip  (UNCHANGED)

    Directory trees are overlaid: files and directories present in the source
    are created or updated, entries that only exist in the destination are
    never removed.

Checksums:
---------
    xxh3 (default), xxh64, xxh128   non-cryptographic, very fast (xxhash)
    md5, sha1, sha256, blake2b      hashlib

    Any zero-argument callable returning an object with update()/digest()
    works as well, e.g. ``write_bytes_if_different(path, data, hashlib.sha512)``.
    Fingerprints detect changes; they are not a tamper-proofing mechanism.

CLI Usage:
---------
    $ write-on-diff file template.h include/template.h
    $ generate_code | write-on-diff bytes src/generated.py
    $ write-on-diff dir assets/ public/assets --exclude '*.tmp' --stats
    $ write-on-diff --help

License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Entry points
    'fingerprint',
    'fingerprint_file',
    'write_bytes_if_different',
    'write_file_if_different',
    'write_dir_if_different',
    'TreeSynchronizer',

    # Checksums
    'ChecksumType',
    'ChecksumAccumulator',
    'ChecksumRegistry',
    'HashAlgorithm',
    'ContentFingerprint',
    'available_checksums',

    # Data structures
    'WriteOutcome',
    'FileResult',
    'SyncReport',
    'SyncOptions',
    'PatternMatcher',

    # Streaming support
    'DataSource',
    'BytesDataSource',
    'FileDataSource',

    # Exceptions
    'WriteOnDiffError',
    'ValidationError',
    'FileIOError',

    # Configuration
    'Config',
    'Colors',

    # Validation functions
    'validate_data',
    'validate_checksum_seed',
    'validate_tree_paths',

    # Utility functions
    'format_size',
    'format_time',

    # CLI
    'create_parser',
    'main',
]

import os
import sys
import stat
import errno
import shutil
import struct
import hashlib
import logging
import argparse
import fnmatch
import secrets
import time
from pathlib import Path
from contextlib import contextmanager
from typing import (
    Optional, List, Set, Tuple, Union, Any, Callable, Protocol,
    BinaryIO, ClassVar, Iterator,
)
from enum import Enum
from dataclasses import dataclass, field
from abc import ABC, abstractmethod

import xxhash


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

class ChecksumAccumulator(Protocol):
    """Protocol for incremental hash objects (hashlib and xxhash both fit)."""
    def update(self, data: bytes) -> None: ...
    def digest(self) -> bytes: ...


PathArg = Union[str, "os.PathLike[str]"]
BytesLike = Union[bytes, bytearray, memoryview]


# ============================================================================
# CHECKSUM TYPES
# ============================================================================

class ChecksumType(Enum):
    """
    Built-in fingerprint algorithms.

    Performance Characteristics:
        - xxHash3: ~30GB/s (fastest, non-cryptographic, default)
        - xxHash64: ~10GB/s (fast, non-cryptographic)
        - xxHash128: ~30GB/s (non-cryptographic, wider digest)
        - BLAKE2b: ~1GB/s (cryptographic)
        - MD5: ~500MB/s (broken as a cryptographic hash, fine for change detection)
        - SHA1 / SHA256: ~400MB/s (cryptographic)

    Example:
        >>> write_file_if_different("a.bin", "b.bin", checksum=ChecksumType.SHA256)
    """
    XXH3 = "xxh3"
    XXH64 = "xxh64"
    XXH128 = "xxh128"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    BLAKE2B = "blake2b"


def available_checksums() -> List[str]:
    """Names accepted wherever a checksum is selected by string."""
    return [c.value for c in ChecksumType]


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for write-on-diff behavior.

    Per-call arguments always win over these settings; Config only supplies
    the defaults used when an argument is left as ``None``.

    Attributes:
        CHUNK_SIZE_STREAMING (int): Read size when hashing or copying files
        DEFAULT_CHECKSUM (ChecksumType): Algorithm used when none is given
        ATOMIC_WRITES (bool): Write to a temporary file and rename it over the destination
        FOLLOW_SYMLINKS (bool): Treat symlinks in a source tree as their referent
        VERBOSE_LOGGING (bool): Enable verbose logging output
        USE_COLORS (bool): Enable colored terminal output (auto-detected)

    Example:
        >>> Config.DEFAULT_CHECKSUM = ChecksumType.SHA256
        >>> Config.ATOMIC_WRITES = True
        >>> Config.reset_defaults()  # Reset all to defaults
    """
    # Performance settings
    CHUNK_SIZE_STREAMING: ClassVar[int] = 1024 * 1024  # 1MB chunks for streaming

    # Behavior settings
    DEFAULT_CHECKSUM: ClassVar[ChecksumType] = ChecksumType.XXH3
    ATOMIC_WRITES: ClassVar[bool] = False
    FOLLOW_SYMLINKS: ClassVar[bool] = False

    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults = {
            "CHUNK_SIZE_STREAMING": 1024 * 1024,
            "DEFAULT_CHECKSUM": ChecksumType.XXH3,
            "ATOMIC_WRITES": False,
            "FOLLOW_SYMLINKS": False,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{int(value)} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


class Colors:
    """
    ANSI color helpers for CLI output.

    Automatically disabled on non-TTY terminals (pipes, redirects) or when
    Config.USE_COLORS = False.

    Example:
        >>> print(Colors.success("created out.txt"))
        [OK] created out.txt
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _DIM = '\033[2m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        """Check if colors should be enabled."""
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text

    @classmethod
    def dim(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._DIM}{text}{cls._RESET}"
        return text


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class WriteOnDiffError(Exception):
    """
    Base exception for all write-on-diff errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, also used as the CLI exit status
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(WriteOnDiffError):
    """
    Raised when input validation fails.

    This indicates a programming error or invalid user input, such as an
    unknown checksum name or non-bytes content.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class FileIOError(WriteOnDiffError):
    """
    Raised for file I/O errors.

    Wraps the OS-level error (available as ``os_error`` and ``__cause__``).
    When raised out of a tree synchronization, ``partial_report`` holds the
    results of every entry completed before the failure; those writes stay
    in effect.
    """
    def __init__(
        self,
        message: str,
        os_error: Optional[OSError] = None,
        path: Optional[PathArg] = None,
    ) -> None:
        super().__init__(message, code=11)
        self.os_error = os_error
        self.path = path
        self.partial_report: Optional["SyncReport"] = None

    @property
    def errno(self) -> Optional[int]:
        return self.os_error.errno if self.os_error is not None else None

    @classmethod
    def from_os_error(cls, operation: str, path: PathArg, error: OSError) -> "FileIOError":
        reason = error.strerror or str(error)
        if error.errno is not None:
            reason = f"{reason} ({error.errno})"
        return cls(f'{operation} "{os.fspath(path)}" failed: {reason}', os_error=error, path=path)


@contextmanager
def _wrap_os_errors(operation: str, path: PathArg) -> Iterator[None]:
    """Re-raise any OSError inside the block as FileIOError."""
    try:
        yield
    except OSError as e:
        raise FileIOError.from_os_error(operation, path, e) from e


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_data(data: Any) -> None:
    """
    Validate that content to be written is a bytes-like object.

    Raises:
        ValidationError: If data is not bytes, bytearray or memoryview

    Example:
        >>> validate_data(b"hello")  # OK
        >>> validate_data("string")  # Raises ValidationError
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValidationError(
            f"data must be bytes, bytearray or memoryview, got {type(data).__name__}"
        )


def validate_checksum_seed(seed: int) -> None:
    """Seeds are unsigned 32-bit integers."""
    if not isinstance(seed, int) or isinstance(seed, bool):
        raise ValidationError(f"checksum seed must be an integer, got {type(seed).__name__}")
    if not 0 <= seed <= 0xFFFFFFFF:
        raise ValidationError(f"checksum seed out of range (0..4294967295): {seed}")


def _is_within(inner: str, outer: str) -> bool:
    """True if real path ``inner`` equals ``outer`` or lies below it."""
    try:
        return os.path.commonpath([inner, outer]) == outer
    except ValueError:
        # Different drives on Windows
        return False


def validate_tree_paths(source_dir: PathArg, dest_dir: PathArg) -> None:
    """
    Reject a destination nested inside its own source tree.

    Every run would copy the previous copy into itself one level deeper.
    Identical source and destination are allowed (everything is unchanged).
    """
    src = os.path.realpath(source_dir)
    dst = os.path.realpath(dest_dir)
    if src != dst and _is_within(dst, src):
        raise ValidationError(
            f'destination "{os.fspath(dest_dir)}" is inside source "{os.fspath(source_dir)}"'
        )


# ============================================================================
# STREAMING DATA SOURCES
# ============================================================================

class DataSource(ABC):
    """
    Abstract base class for content that gets fingerprinted.

    Fingerprints are always computed chunk by chunk, so a file is never held
    in memory as a whole.

    Example:
        >>> with FileDataSource("large_file.bin") as source:
        ...     for chunk in source.iter_chunks(4096):
        ...         process(chunk)
    """

    @abstractmethod
    def read_chunk(self, size: int) -> bytes:
        """Read up to ``size`` bytes; empty bytes at EOF."""
        raise NotImplementedError

    @abstractmethod
    def size(self) -> int:
        """Total size of the data source in bytes."""
        raise NotImplementedError

    def iter_chunks(self, chunk_size: Optional[int] = None) -> Iterator[bytes]:
        chunk_size = chunk_size or Config.CHUNK_SIZE_STREAMING
        while True:
            chunk = self.read_chunk(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        """Close the data source and release resources."""
        pass

    def __enter__(self) -> 'DataSource':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BytesDataSource(DataSource):
    """
    DataSource over in-memory bytes.

    Example:
        >>> source = BytesDataSource(b"Hello, World!")
        >>> source.read_chunk(5)
        b'Hello'
    """

    def __init__(self, data: BytesLike) -> None:
        self._data = data
        self._position = 0

    def read_chunk(self, size: int) -> bytes:
        chunk = self._data[self._position:self._position + size]
        self._position += len(chunk)
        return chunk  # type: ignore[return-value]

    def size(self) -> int:
        return len(self._data)


class FileDataSource(DataSource):
    """
    DataSource that streams a file from disk.

    The handle is opened on ``__enter__`` and released on ``__exit__``,
    including when the body raises.

    Raises:
        FileIOError: If the file cannot be stat'ed, opened or read
    """

    def __init__(self, filepath: PathArg) -> None:
        self.filepath = filepath
        self._file: Optional[BinaryIO] = None
        with _wrap_os_errors("stat", filepath):
            self._size = os.stat(filepath).st_size

    def __enter__(self) -> 'FileDataSource':
        with _wrap_os_errors("open", self.filepath):
            self._file = open(self.filepath, 'rb')
        return self

    def read_chunk(self, size: int) -> bytes:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        with _wrap_os_errors("read", self.filepath):
            return self._file.read(size)

    def size(self) -> int:
        return self._size

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Quiet by default; the CLI raises the level with -v.
_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('write-on-diff')
logger.setLevel(_default_log_level)


# ============================================================================
# FINGERPRINTER
# ============================================================================

@dataclass(frozen=True)
class HashAlgorithm:
    """
    A named factory of fresh ChecksumAccumulator objects.

    This is the pluggable part of the library: writers and the tree
    synchronizer only ever call ``new()``, ``update()`` and ``digest()``.

    Example:
        >>> algo = HashAlgorithm("sha512", hashlib.sha512)
        >>> write_bytes_if_different("out.bin", data, checksum=algo)
    """
    name: str
    factory: Callable[[], ChecksumAccumulator]

    def new(self) -> ChecksumAccumulator:
        return self.factory()

    @property
    def digest_size(self) -> int:
        return len(self.new().digest())


ChecksumSpec = Union[None, str, ChecksumType, HashAlgorithm, Callable[[], ChecksumAccumulator]]

_HASHLIB_NAMES = {
    ChecksumType.MD5: "md5",
    ChecksumType.SHA1: "sha1",
    ChecksumType.SHA256: "sha256",
    ChecksumType.BLAKE2B: "blake2b",
}


class ChecksumRegistry:
    """
    Registry of available fingerprint algorithms.

    Abstracts hashlib and xxhash behind HashAlgorithm. Seeded variants are
    supported: xxhash takes the seed natively, hashlib algorithms hash the
    little-endian 32-bit seed before the content.

    Example:
        >>> algo = ChecksumRegistry.get_algorithm(ChecksumType.XXH64, seed=7)
        >>> algo.name
        'xxh64:7'
    """

    @classmethod
    def get_accumulator_factory(
        cls,
        checksum_type: ChecksumType,
        seed: int = 0
    ) -> Callable[[], ChecksumAccumulator]:
        """Return a zero-argument callable producing fresh accumulators."""
        validate_checksum_seed(seed)

        if checksum_type == ChecksumType.XXH3:
            return lambda: xxhash.xxh3_64(seed=seed)
        if checksum_type == ChecksumType.XXH64:
            return lambda: xxhash.xxh64(seed=seed)
        if checksum_type == ChecksumType.XXH128:
            return lambda: xxhash.xxh3_128(seed=seed)

        if checksum_type in _HASHLIB_NAMES:
            name = _HASHLIB_NAMES[checksum_type]
            seed_bytes = struct.pack('<I', seed) if seed else b""

            def _new() -> ChecksumAccumulator:
                h = hashlib.new(name)
                if seed_bytes:
                    h.update(seed_bytes)
                return h

            return _new

        raise ValidationError(f"Unsupported checksum type: {checksum_type}")

    @classmethod
    def get_algorithm(cls, checksum_type: ChecksumType, seed: int = 0) -> HashAlgorithm:
        name = checksum_type.value if not seed else f"{checksum_type.value}:{seed}"
        return HashAlgorithm(name, cls.get_accumulator_factory(checksum_type, seed))

    @classmethod
    def resolve(cls, checksum: ChecksumSpec = None) -> HashAlgorithm:
        """
        Turn any accepted checksum selector into a HashAlgorithm.

        Accepts None (Config.DEFAULT_CHECKSUM), a ChecksumType, its name,
        a HashAlgorithm, or a zero-argument accumulator factory.

        Raises:
            ValidationError: For unknown names or unusable objects
        """
        if checksum is None:
            checksum = Config.DEFAULT_CHECKSUM
        if isinstance(checksum, HashAlgorithm):
            return checksum
        if isinstance(checksum, str):
            try:
                checksum = ChecksumType(checksum.lower())
            except ValueError:
                raise ValidationError(
                    f"Unsupported checksum: {checksum!r} "
                    f"(choose from {', '.join(available_checksums())})"
                ) from None
        if isinstance(checksum, ChecksumType):
            return cls.get_algorithm(checksum)
        if callable(checksum):
            # Distinct callables must never share a name, or fingerprints from
            # different algorithms could compare equal.
            name = getattr(checksum, "__qualname__", None) or type(checksum).__qualname__
            return HashAlgorithm(f"{name}@{id(checksum):x}", checksum)
        raise ValidationError(f"Unsupported checksum selector: {checksum!r}")


@dataclass(frozen=True)
class ContentFingerprint:
    """
    Digest of some content under one algorithm.

    Equality requires the same algorithm name, so fingerprints computed with
    different algorithms never compare equal.
    """
    algorithm: str
    digest: bytes

    def hexdigest(self) -> str:
        return self.digest.hex()

    @property
    def value(self) -> int:
        return int.from_bytes(self.digest, "big")

    def __repr__(self) -> str:
        return f"ContentFingerprint({self.algorithm}:{self.hexdigest()})"


def _fingerprint_source(algorithm: HashAlgorithm, source: DataSource) -> ContentFingerprint:
    acc = algorithm.new()
    for chunk in source.iter_chunks():
        acc.update(chunk)
    return ContentFingerprint(algorithm.name, acc.digest())


def fingerprint(data: BytesLike, checksum: ChecksumSpec = None) -> ContentFingerprint:
    """
    Fingerprint an in-memory byte sequence (empty included).

    Deterministic for a given (algorithm, bytes) pair. Pure: no I/O.

    Example:
        >>> fingerprint(b"hello") == fingerprint(b"hello")
        True
    """
    validate_data(data)
    return _fingerprint_source(ChecksumRegistry.resolve(checksum), BytesDataSource(data))


def fingerprint_file(path: PathArg, checksum: ChecksumSpec = None) -> ContentFingerprint:
    """
    Fingerprint a file by streaming it in Config.CHUNK_SIZE_STREAMING chunks.

    Equal to ``fingerprint(Path(path).read_bytes(), checksum)``.

    Raises:
        FileIOError: If the file cannot be read
    """
    algorithm = ChecksumRegistry.resolve(checksum)
    with FileDataSource(path) as source:
        return _fingerprint_source(algorithm, source)


# ============================================================================
# CONDITIONAL WRITER
# ============================================================================

class WriteOutcome(Enum):
    """Result of one conditional write."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    @property
    def written(self) -> bool:
        return self is not WriteOutcome.UNCHANGED


def _stat_existing(path: PathArg) -> Optional[os.stat_result]:
    """stat() the destination; a missing file is reported as None, not an error."""
    try:
        return os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise FileIOError.from_os_error("stat", path, e) from e


def _create_temp(directory: str) -> Tuple[int, str]:
    """Open a fresh sibling temp file; the kernel applies the umask to 0o666."""
    flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY | getattr(os, "O_BINARY", 0)
    while True:
        tmp_path = os.path.join(directory, f".tmp_{secrets.token_hex(8)}")
        try:
            return os.open(tmp_path, flags, 0o666), tmp_path
        except FileExistsError:
            continue


def _commit_atomic(
    path: PathArg,
    writer: Callable[[BinaryIO], None],
    previous: Optional[os.stat_result],
) -> None:
    """Write through a temporary sibling file, then rename it over ``path``."""
    directory = os.path.dirname(os.path.abspath(path))
    with _wrap_os_errors("write", path):
        fd, tmp_path = _create_temp(directory)
        try:
            try:
                handle = os.fdopen(fd, "wb")
            except BaseException:
                os.close(fd)
                raise
            with handle:
                writer(handle)
            if previous is not None:
                os.chmod(tmp_path, stat.S_IMODE(previous.st_mode))
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def _decide(
    existing: Optional[os.stat_result],
    new_size: int,
    same_content: Callable[[], bool],
) -> WriteOutcome:
    if existing is None:
        return WriteOutcome.CREATED
    # A size mismatch proves a difference without hashing anything.
    if existing.st_size != new_size:
        return WriteOutcome.UPDATED
    return WriteOutcome.UNCHANGED if same_content() else WriteOutcome.UPDATED


def write_bytes_if_different(
    path: PathArg,
    data: BytesLike,
    checksum: ChecksumSpec = None,
    atomic: Optional[bool] = None,
    dry_run: bool = False,
) -> WriteOutcome:
    """
    Write ``data`` to ``path`` unless the file already holds exactly that content.

    Args:
        path: Destination file. Its parent directory must exist.
        data: New content
        checksum: Fingerprint algorithm (see ChecksumRegistry.resolve)
        atomic: Use temp-file-then-rename (default: Config.ATOMIC_WRITES)
        dry_run: Decide the outcome without touching the filesystem

    Returns:
        WriteOutcome.CREATED, UPDATED or UNCHANGED. The destination's mtime
        changes only for the first two.

    Raises:
        ValidationError: If data is not bytes-like
        FileIOError: On any I/O failure other than a missing destination
    """
    validate_data(data)
    if isinstance(data, memoryview):
        data = data.tobytes()
    algorithm = ChecksumRegistry.resolve(checksum)
    use_atomic = Config.ATOMIC_WRITES if atomic is None else atomic

    existing = _stat_existing(path)
    outcome = _decide(
        existing,
        len(data),
        lambda: fingerprint(data, algorithm) == fingerprint_file(path, algorithm),
    )
    if not outcome.written:
        logger.debug("unchanged %s", os.fspath(path))
        return outcome

    if not dry_run:
        if use_atomic:
            _commit_atomic(path, lambda handle: handle.write(data), existing)
        else:
            with _wrap_os_errors("write", path):
                with open(path, "wb") as handle:
                    handle.write(data)
    logger.info("%s %s (%s)", outcome.value, os.fspath(path), format_size(len(data)))
    return outcome


def _write_file(
    source: PathArg,
    destination: PathArg,
    algorithm: HashAlgorithm,
    atomic: bool,
    dry_run: bool,
) -> Tuple[WriteOutcome, int]:
    with _wrap_os_errors("stat", source):
        source_size = os.stat(source).st_size

    existing = _stat_existing(destination)
    outcome = _decide(
        existing,
        source_size,
        lambda: fingerprint_file(source, algorithm) == fingerprint_file(destination, algorithm),
    )
    if not outcome.written:
        logger.debug("unchanged %s", os.fspath(destination))
        return outcome, source_size

    if not dry_run:
        if atomic:
            def _copy_into(handle: BinaryIO) -> None:
                with open(source, "rb") as src:
                    shutil.copyfileobj(src, handle, Config.CHUNK_SIZE_STREAMING)

            _commit_atomic(destination, _copy_into, existing)
        else:
            with _wrap_os_errors("copy", destination):
                shutil.copyfile(source, destination)
    logger.info("%s %s (%s)", outcome.value, os.fspath(destination), format_size(source_size))
    return outcome, source_size


def write_file_if_different(
    source: PathArg,
    destination: PathArg,
    checksum: ChecksumSpec = None,
    atomic: Optional[bool] = None,
    dry_run: bool = False,
) -> WriteOutcome:
    """
    Copy ``source`` over ``destination`` unless both already hold the same content.

    Same semantics as write_bytes_if_different, with the new content streamed
    from a file instead of memory.

    Raises:
        FileIOError: If the source is missing or unreadable, or on any other
            I/O failure except a missing destination
    """
    algorithm = ChecksumRegistry.resolve(checksum)
    use_atomic = Config.ATOMIC_WRITES if atomic is None else atomic
    outcome, _ = _write_file(source, destination, algorithm, use_atomic, dry_run)
    return outcome


# ============================================================================
# TREE SYNCHRONIZER
# ============================================================================

@dataclass(frozen=True)
class FileResult:
    """What happened to one source entry during a tree synchronization."""
    source: Path
    destination: Path
    outcome: Optional[WriteOutcome]
    size: int = 0
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.outcome is None


@dataclass
class SyncReport:
    """Per-file outcomes of a tree synchronization, in processing order."""
    results: List[FileResult] = field(default_factory=list)
    dirs_created: int = 0
    elapsed: float = 0.0

    def record(self, result: FileResult) -> None:
        self.results.append(result)

    def _count(self, outcome: WriteOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def num_files(self) -> int:
        return sum(1 for r in self.results if not r.skipped)

    @property
    def num_created(self) -> int:
        return self._count(WriteOutcome.CREATED)

    @property
    def num_updated(self) -> int:
        return self._count(WriteOutcome.UPDATED)

    @property
    def num_unchanged(self) -> int:
        return self._count(WriteOutcome.UNCHANGED)

    @property
    def num_skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def bytes_written(self) -> int:
        return sum(r.size for r in self.results if r.outcome is not None and r.outcome.written)

    @property
    def written(self) -> List[Path]:
        """Destinations that were created or updated."""
        return [r.destination for r in self.results if r.outcome is not None and r.outcome.written]

    @property
    def unchanged(self) -> List[Path]:
        return [r.destination for r in self.results if r.outcome is WriteOutcome.UNCHANGED]

    def print_stats(self) -> None:
        """Print statistics in rsync --stats style"""
        print(f"\nNumber of files: {self.num_files:,}")
        print(f"Number of created files: {self.num_created:,}")
        print(f"Number of updated files: {self.num_updated:,}")
        print(f"Number of unchanged files: {self.num_unchanged:,}")
        print(f"Number of skipped entries: {self.num_skipped:,}")
        print(f"Number of created directories: {self.dirs_created:,}")
        print(f"Total written: {format_size(self.bytes_written)}")
        print(f"Elapsed: {format_time(self.elapsed)}")
        print()

    def __repr__(self) -> str:
        return (
            f"SyncReport(files={self.num_files}, created={self.num_created}, "
            f"updated={self.num_updated}, unchanged={self.num_unchanged}, "
            f"skipped={self.num_skipped})"
        )


class PatternMatcher:
    """Pattern matching for exclude/include filters"""

    def __init__(self, exclude_patterns: Optional[List[str]] = None, include_patterns: Optional[List[str]] = None):
        self.exclude_patterns: List[str] = exclude_patterns if exclude_patterns is not None else []
        self.include_patterns: List[str] = include_patterns if include_patterns is not None else []

    @staticmethod
    def _matches(relpath: str, pattern: str) -> bool:
        name = relpath.rsplit('/', 1)[-1]
        return fnmatch.fnmatch(relpath, pattern) or fnmatch.fnmatch(name, pattern)

    def should_exclude(self, relpath: str) -> bool:
        """Check if a path (relative to the source root, '/'-separated) is excluded"""
        # Include patterns take precedence
        for pattern in self.include_patterns:
            if self._matches(relpath, pattern):
                return False

        for pattern in self.exclude_patterns:
            if self._matches(relpath, pattern):
                return True

        return False


@dataclass
class SyncOptions:
    """
    Options for one tree synchronization.

    Attributes:
        checksum: Fingerprint algorithm selector
        exclude: fnmatch patterns of entries to leave alone
        include: fnmatch patterns that override exclude
        follow_symlinks: Copy symlink referents (default: Config.FOLLOW_SYMLINKS)
        atomic: Temp-file-then-rename writes (default: Config.ATOMIC_WRITES)
        dry_run: Report outcomes without creating or writing anything
    """
    checksum: ChecksumSpec = None
    exclude: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    follow_symlinks: Optional[bool] = None
    atomic: Optional[bool] = None
    dry_run: bool = False


class TreeSynchronizer:
    """
    Overlay a source directory tree onto a destination, writing only changed files.

    Traversal is depth-first with siblings in name order. Regular files go
    through the conditional writer, directories are created when missing and
    recursed into. Destination entries without a source counterpart are left
    alone.

    Non-regular entries:
        - symlinks are skipped with a warning unless follow_symlinks is set,
          in which case they are treated as their referent (broken links and
          links back into the current directory chain or onto an ancestor of
          the destination are skipped)
        - FIFOs, sockets and devices are always skipped with a warning

    The first I/O error aborts the run. Work completed before it stays done
    and is described by ``error.partial_report``.
    """

    def __init__(self, options: Optional[SyncOptions] = None) -> None:
        self.options = options or SyncOptions()
        self.algorithm = ChecksumRegistry.resolve(self.options.checksum)
        self.pattern_matcher = PatternMatcher(
            exclude_patterns=self.options.exclude,
            include_patterns=self.options.include
        )
        self.follow_symlinks = (
            Config.FOLLOW_SYMLINKS if self.options.follow_symlinks is None else self.options.follow_symlinks
        )
        self.atomic = Config.ATOMIC_WRITES if self.options.atomic is None else self.options.atomic
        self.report = SyncReport()
        # (st_dev, st_ino) of the source directories on the current recursion path
        self._active_dirs: Set[Tuple[int, int]] = set()
        self._planned_dirs: Set[Path] = set()
        self._dest_real = ""

    def sync(self, source_dir: PathArg, dest_dir: PathArg) -> SyncReport:
        """Synchronize ``source_dir`` onto ``dest_dir`` and return the report."""
        source_root = Path(source_dir)
        dest_root = Path(dest_dir)
        validate_tree_paths(source_root, dest_root)

        self.report = SyncReport()
        self._active_dirs.clear()
        self._planned_dirs.clear()
        self._dest_real = os.path.realpath(dest_root)
        start = time.perf_counter()
        try:
            self._sync_dir(source_root, dest_root, Path())
        except FileIOError as e:
            e.partial_report = self.report
            raise
        finally:
            self.report.elapsed = time.perf_counter() - start

        logger.info(
            "synchronized %s -> %s: %d written, %d unchanged, %d skipped in %s",
            source_root, dest_root, len(self.report.written), self.report.num_unchanged,
            self.report.num_skipped, format_time(self.report.elapsed)
        )
        return self.report

    def _list_dir(self, source: Path) -> List[os.DirEntry]:
        # The listing is materialized so the handle is closed before recursing.
        with _wrap_os_errors("opendir", source):
            with os.scandir(source) as it:
                return sorted(it, key=lambda e: e.name)

    def _ensure_dir(self, dest: Path) -> None:
        missing: List[Path] = []
        probe = dest
        while not os.path.lexists(probe) and probe not in self._planned_dirs:
            missing.append(probe)
            if probe.parent == probe:
                break
            probe = probe.parent
        if not missing and (dest in self._planned_dirs or dest.is_dir()):
            return

        if self.options.dry_run:
            # Directories a real run would have created by now
            self._planned_dirs.update(missing)
        else:
            with _wrap_os_errors("mkdir", dest):
                dest.mkdir(parents=True, exist_ok=True)
        if missing:
            self.report.dirs_created += len(missing)
            logger.info("created directory %s", dest)

    def _sync_dir(self, source: Path, dest: Path, rel: Path) -> None:
        with _wrap_os_errors("stat", source):
            st = os.stat(source)
        entries = self._list_dir(source)
        self._ensure_dir(dest)

        key = (st.st_dev, st.st_ino)
        self._active_dirs.add(key)
        try:
            for entry in entries:
                self._sync_entry(entry, dest / entry.name, rel / entry.name)
        finally:
            self._active_dirs.discard(key)

    def _skip(self, source: Path, dest: Path, reason: str) -> None:
        if reason == "excluded":
            logger.debug("excluded %s", source)
        else:
            logger.warning("skipping %s \"%s\"", reason, source)
        self.report.record(FileResult(source, dest, None, skip_reason=reason))

    def _sync_entry(self, entry: os.DirEntry, dest: Path, rel: Path) -> None:
        source = Path(entry.path)
        if self.pattern_matcher.should_exclude(rel.as_posix()):
            self._skip(source, dest, "excluded")
            return

        with _wrap_os_errors("stat", source):
            is_link = entry.is_symlink()
            is_dir = entry.is_dir(follow_symlinks=False)
            is_file = entry.is_file(follow_symlinks=False)

        if is_link:
            if not self.follow_symlinks:
                self._skip(source, dest, "symlink")
                return
            try:
                target = os.stat(source)
            except OSError as e:
                if isinstance(e, FileNotFoundError) or e.errno == errno.ELOOP:
                    self._skip(source, dest, "broken symlink")
                    return
                raise FileIOError.from_os_error("stat", source, e) from e
            is_dir = stat.S_ISDIR(target.st_mode)
            is_file = stat.S_ISREG(target.st_mode)
            # A followed directory may not lead back into the chain being
            # walked, nor into anything holding the destination being written.
            if is_dir and (
                (target.st_dev, target.st_ino) in self._active_dirs
                or _is_within(self._dest_real, os.path.realpath(source))
            ):
                self._skip(source, dest, "symlink loop")
                return

        if is_dir:
            self._sync_dir(source, dest, rel)
        elif is_file:
            outcome, size = _write_file(source, dest, self.algorithm, self.atomic, self.options.dry_run)
            self.report.record(FileResult(source, dest, outcome, size))
        else:
            self._skip(source, dest, "special file")


def write_dir_if_different(
    source_dir: PathArg,
    dest_dir: PathArg,
    checksum: ChecksumSpec = None,
    exclude: Optional[List[str]] = None,
    include: Optional[List[str]] = None,
    follow_symlinks: Optional[bool] = None,
    atomic: Optional[bool] = None,
    dry_run: bool = False,
) -> SyncReport:
    """
    Overlay ``source_dir`` onto ``dest_dir``, writing only files whose content changed.

    ``dest_dir`` and its missing ancestors are created. Nothing is deleted.

    Raises:
        ValidationError: If dest_dir lies inside source_dir
        FileIOError: On the first I/O failure (see ``partial_report``)
    """
    options = SyncOptions(
        checksum=checksum,
        exclude=list(exclude or []),
        include=list(include or []),
        follow_symlinks=follow_symlinks,
        atomic=atomic,
        dry_run=dry_run,
    )
    return TreeSynchronizer(options).sync(source_dir, dest_dir)


# ============================================================================
# CLI
# ============================================================================

def _print_outcome(outcome: Optional[WriteOutcome], path: PathArg, dry_run: bool,
                   skip_reason: Optional[str] = None) -> None:
    prefix = "(dry run) " if dry_run else ""
    target = os.fspath(path)
    if outcome is None:
        print(Colors.warning(f"{prefix}skipped {target} ({skip_reason})"))
    elif outcome.written:
        print(Colors.success(f"{prefix}{outcome.value} {target}"))
    else:
        print(Colors.dim(f"{prefix}unchanged {target}"))


def cli_bytes(args: Any) -> int:
    """Write stdin (or --input) to DEST if different."""
    if args.input == '-':
        data = sys.stdin.buffer.read()
    else:
        with _wrap_os_errors("read", args.input):
            with open(args.input, 'rb') as f:
                data = f.read()
    outcome = write_bytes_if_different(
        args.dest, data, checksum=args.checksum, atomic=args.atomic or None, dry_run=args.dry_run
    )
    if not args.quiet:
        _print_outcome(outcome, args.dest, args.dry_run)
    return 0


def cli_file(args: Any) -> int:
    """Copy SOURCE to DEST if different."""
    outcome = write_file_if_different(
        args.source, args.dest, checksum=args.checksum, atomic=args.atomic or None, dry_run=args.dry_run
    )
    if not args.quiet:
        _print_outcome(outcome, args.dest, args.dry_run)
    return 0


def cli_dir(args: Any) -> int:
    """Overlay SOURCE directory onto DEST, writing only changed files."""
    report = write_dir_if_different(
        args.source,
        args.dest,
        checksum=args.checksum,
        exclude=args.exclude,
        include=args.include,
        follow_symlinks=args.follow_symlinks or None,
        atomic=args.atomic or None,
        dry_run=args.dry_run,
    )
    if not args.quiet:
        for result in report.results:
            if result.outcome is not None and result.outcome.written:
                _print_outcome(result.outcome, result.destination, args.dry_run)
            elif args.verbose:
                _print_outcome(result.outcome, result.destination, args.dry_run, result.skip_reason)
    if args.stats:
        report.print_stats()
    return 0


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--checksum', choices=available_checksums(),
                        help=f"fingerprint algorithm (default: {Config.DEFAULT_CHECKSUM.value})")
    parser.add_argument('--atomic', action='store_true',
                        help="write through a temporary file renamed over the destination")
    parser.add_argument('-n', '--dry-run', action='store_true',
                        help="show what would be written without writing")
    parser.add_argument('-v', '--verbose', action='count',
                        help="increase verbosity")
    parser.add_argument('-q', '--quiet', action='store_true',
                        help="suppress non-error output")


def create_parser() -> argparse.ArgumentParser:
    """
    Build the argparse parser for the write-on-diff command.

    Common options are accepted before or after the subcommand. The
    subcommand copies default to SUPPRESS so they only override what was
    actually given on their side.
    """
    parser = argparse.ArgumentParser(
        prog="write-on-diff",
        description="Write bytes, files or directory trees only when their content changed.",
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    _add_common_options(parser)
    parser.set_defaults(checksum=None, atomic=False, dry_run=False, verbose=0, quiet=False)

    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    _add_common_options(common)

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    p_bytes = subparsers.add_parser('bytes', parents=[common],
                                    help="write stdin to DEST if different")
    p_bytes.add_argument('dest', help="destination file")
    p_bytes.add_argument('-i', '--input', default='-', help="read content from this file instead of stdin")
    p_bytes.set_defaults(func=cli_bytes)

    p_file = subparsers.add_parser('file', parents=[common],
                                   help="copy SOURCE to DEST if different")
    p_file.add_argument('source', help="source file")
    p_file.add_argument('dest', help="destination file")
    p_file.set_defaults(func=cli_file)

    p_dir = subparsers.add_parser('dir', parents=[common],
                                  help="overlay SOURCE directory onto DEST")
    p_dir.add_argument('source', help="source directory")
    p_dir.add_argument('dest', help="destination directory")
    p_dir.add_argument('--exclude', action='append', default=[], metavar='PATTERN',
                       help="skip entries matching PATTERN")
    p_dir.add_argument('--include', action='append', default=[], metavar='PATTERN',
                       help="don't exclude entries matching PATTERN")
    p_dir.add_argument('-L', '--follow-symlinks', action='store_true',
                       help="treat symlinks as the file or directory they point to")
    p_dir.add_argument('--stats', action='store_true', help="print a summary")
    p_dir.set_defaults(func=cli_dir)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, the error's code otherwise)
    """
    args = create_parser().parse_args(argv)

    if args.verbose:
        logger.setLevel(logging.DEBUG if args.verbose > 1 else logging.INFO)

    try:
        return args.func(args)
    except WriteOnDiffError as e:
        print(Colors.error(f"write-on-diff: {e}"), file=sys.stderr)
        return e.code


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
