#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
tarpipe: Stream a tarball of local paths to a peer or a file
=============================================================

One side validates a list of relative paths, walks directories and streams a
POSIX tar archive outward (over a TCP connection or into a file). The other
side accepts a single connection (or opens an archive file) and unpacks the
stream under a destination directory.

Quick Start:
-----------
    >>> from tarpipe import send_archive, receive_archive
    >>>
    >>> # Receiver (one connection, then exit)
    >>> stats = receive_archive(9000, "incoming", accept_timeout=60)
    >>>
    >>> # Sender
    >>> stats = send_archive(["docs", "notes.txt"], "10.0.0.5:9000")
    >>> print(stats.stream_digest)

CLI Usage:
---------
    $ tarpipe -p 9000 -d incoming
    $ tarpipe -m docs notes.txt -s 10.0.0.5:9000
    $ tarpipe -m docs -o docs.tar
    $ tarpipe -i docs.tar -d restored
    $ tarpipe --help

Rules:
-----
    - Only relative paths are accepted; absolute paths are rejected.
    - Symbolic links are rejected, at the top level and inside directories.
    - A directory is stored relative to itself: `docs/sub/b.txt` is stored as
      `sub/b.txt`.
    - The whole path list is validated before the first byte is written.
    - The end-of-archive trailer is written only when the build succeeds.
    - Both sides compute an xxh64 digest over the raw archive bytes.

Copyright:
---------
    License: GPLv3+
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Core pipeline
    'ArchiveBuilder',
    'ArchiveExtractor',
    'ArchiveMember',
    'PathEntry',
    'PathKind',
    'validate_path',
    'plan_members',

    # Byte streams
    'ArchiveSink',
    'FileSink',
    'SocketSink',
    'ArchiveSource',
    'FileSource',
    'SocketSource',

    # Transport
    'SingleShotListener',
    'open_connection',
    'parse_address',
    'send_archive',
    'receive_archive',
    'serve_once',
    'write_archive_file',
    'extract_archive_file',
    'run_transfer',

    # Data structures
    'TransferStats',
    'TransferOptions',

    # Exceptions
    'TarpipeError',
    'ConfigurationError',
    'InputError',
    'UnsupportedPath',
    'NotFound',
    'FileOpenError',
    'TransportError',
    'SinkWriteError',
    'ConnectError',
    'NoConnection',
    'ExtractError',

    # Configuration
    'Config',
    'Colors',

    # CLI
    'create_parser',
    'parse_args',
    'validate_options',
    'main',

    # Utility functions
    'format_size',
    'format_time',
]

import os
import sys
import stat
import time
import socket
import tarfile
import logging
import argparse
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, BinaryIO, ClassVar, Dict, List, Optional, Sequence, Tuple

import xxhash


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Process-wide defaults for tarpipe.

    Per-invocation settings live in `TransferOptions`; the values here are
    what the CLI and the core functions fall back to when a caller passes
    nothing.

    Attributes:
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Enable INFO level logging
        CONNECT_TIMEOUT (float): Seconds to wait for an outbound connect
        ACCEPT_TIMEOUT (float | None): Seconds to wait for the single inbound
            peer. None waits indefinitely.
        IO_TIMEOUT (float | None): Per-operation socket timeout once a
            connection exists. None keeps the socket fully blocking.
        LISTEN_ADDRESS (str): Bind address for receive mode
        COPY_BUFSIZE (int): Buffer size handed to the tar codec
        ARCHIVE_FORMAT (int): tarfile format constant used when writing

    Example:
        >>> Config.ACCEPT_TIMEOUT = 30.0
        >>> Config.reset_defaults()
    """
    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    # Transport settings
    CONNECT_TIMEOUT: ClassVar[Optional[float]] = 10.0
    ACCEPT_TIMEOUT: ClassVar[Optional[float]] = None
    IO_TIMEOUT: ClassVar[Optional[float]] = None
    LISTEN_ADDRESS: ClassVar[str] = "0.0.0.0"

    # Archive settings
    COPY_BUFSIZE: ClassVar[int] = tarfile.RECORDSIZE
    ARCHIVE_FORMAT: ClassVar[int] = tarfile.PAX_FORMAT

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
            "CONNECT_TIMEOUT": 10.0,
            "ACCEPT_TIMEOUT": None,
            "IO_TIMEOUT": None,
            "LISTEN_ADDRESS": "0.0.0.0",
            "COPY_BUFSIZE": tarfile.RECORDSIZE,
            "ARCHIVE_FORMAT": tarfile.PAX_FORMAT,
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
    value: float = float(size)
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
    ANSI color helpers for terminal output.

    Disabled on non-TTY streams (pipes, redirects) or when
    Config.USE_COLORS = False, in which case plain tags are used.

    Example:
        >>> print(Colors.success("finished"))
        [OK] finished
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls, stream: Any = None) -> bool:
        if not Config.USE_COLORS:
            return False
        target = stream if stream is not None else sys.stdout
        return hasattr(target, 'isatty') and target.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X). Checks stderr, where errors go."""
        if cls._is_enabled(sys.stderr):
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

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


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================
#
# Numeric codes follow rsync's RERR_* values where one fits:
#   1 syntax/usage, 3 input file selection, 10 socket I/O, 11 file I/O,
#   12 data stream, 35 timeout waiting for a connection.

class TarpipeError(Exception):
    """
    Base exception for all tarpipe errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, used as the process exit status
        cause: Underlying exception, when one triggered this error

    Example:
        >>> raise TarpipeError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class ConfigurationError(TarpipeError):
    """
    Raised when the mode arguments are missing, conflicting or malformed.

    Always raised before any path is read or any socket is opened.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=1)


class InputError(TarpipeError):
    """Base class for problems with the paths handed to the builder."""


class UnsupportedPath(InputError):
    """
    Raised for a path that is never transferable.

    Attributes:
        path: The offending path as supplied (or as found while walking)
        reason: One of "absolute", "symlink", "special file",
            "parent reference"
    """
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason} paths are not supported", code=3)
        self.path = path
        self.reason = reason


class NotFound(InputError):
    """Raised when a path does not exist."""
    def __init__(self, path: str) -> None:
        super().__init__(f"{path}: no such file or directory", code=3)
        self.path = path


class FileOpenError(InputError):
    """
    Raised when a path exists but cannot be read.

    This wraps the OS-level error with the path it concerns, since the bare
    OSError from a failed open often does not say which file it was.
    """
    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"{path}: {_describe(cause)}", code=11, cause=cause)
        self.path = path


class TransportError(TarpipeError):
    """
    Base class for failures of the byte stream endpoint itself.

    Raised directly when a listener cannot be bound.
    """
    def __init__(self, message: str, code: int = 10, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, code=code, cause=cause)


class SinkWriteError(TransportError):
    """Raised when the destination stream rejects a write (peer gone, disk full)."""
    def __init__(self, cause: BaseException, target: str = "archive sink") -> None:
        super().__init__(f"write to {target} failed: {_describe(cause)}", code=12, cause=cause)
        self.target = target


class ConnectError(TransportError):
    """Raised when the outbound connection cannot be established. Never retried."""
    def __init__(self, address: str, cause: BaseException) -> None:
        super().__init__(f"cannot connect to {address}: {_describe(cause)}", code=10, cause=cause)
        self.address = address


class NoConnection(TransportError):
    """Raised when no peer connects before the accept timeout expires."""
    def __init__(self, port: int, timeout: Optional[float]) -> None:
        super().__init__(
            f"received no connection on port {port} after {timeout} seconds",
            code=35,
        )
        self.port = port
        self.timeout = timeout


class ExtractError(TarpipeError):
    """
    Raised when the incoming archive cannot be unpacked.

    This covers malformed or truncated stream data, a missing end-of-archive
    trailer, entries that would land outside the destination, and write
    failures under the destination. The destination may be partially
    populated when this is raised.
    """
    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, code=13, cause=cause)


def _describe(err: BaseException) -> str:
    """Short description of an OS error without the duplicated filename."""
    if isinstance(err, OSError) and err.strerror:
        return err.strerror
    return str(err) or type(err).__name__


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Keep stdout clean by default; -v raises the level.
_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('tarpipe')
logger.setLevel(_default_log_level)


# ============================================================================
# TRANSFER STATISTICS
# ============================================================================

@dataclass
class TransferStats:
    """
    Outcome of one build or one extraction.

    Attributes:
        num_files: Regular files written to / recreated from the archive
        num_dirs: Directory entries written to / recreated from the archive
        total_size: Sum of file content sizes
        stream_bytes: Raw archive bytes written or read, trailer included
        stream_digest: xxh64 hex digest of those raw bytes
        elapsed: Wall clock seconds
    """
    num_files: int = 0
    num_dirs: int = 0
    total_size: int = 0
    stream_bytes: int = 0
    stream_digest: str = ""
    elapsed: float = 0.0

    def print_stats(self) -> None:
        """Print statistics in rsync --stats style."""
        print(f"\n{Colors.bold('Transfer statistics')}")
        print(f"Number of files: {self.num_files:,}")
        print(f"Number of directories: {self.num_dirs:,}")
        print(f"Total file size: {format_size(self.total_size)}")
        print(f"Archive stream size: {format_size(self.stream_bytes)}")
        print(f"Archive stream digest (xxh64): {self.stream_digest}")
        print(f"Elapsed: {format_time(self.elapsed)}")
        print()


# ============================================================================
# BYTE STREAMS - Sinks and sources the tar codec reads and writes
# ============================================================================

class ArchiveSink(ABC):
    """
    Write side of an archive stream.

    Counts and digests every byte it forwards. Any OSError from the
    underlying target becomes a SinkWriteError. After `abort()` the sink
    drops further writes, so a failed build cannot flush a trailer or
    buffered data into the target.

    Subclasses implement `_write_raw()`.
    """

    def __init__(self, target_name: str) -> None:
        self.target_name = target_name
        self.bytes_written = 0
        self._digest = xxhash.xxh64()
        self._aborted = False

    @abstractmethod
    def _write_raw(self, data: bytes) -> None:
        """Write all of `data` to the underlying target."""
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        if self._aborted:
            return 0
        try:
            self._write_raw(data)
        except OSError as e:
            self._aborted = True
            raise SinkWriteError(e, self.target_name) from e
        self._digest.update(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        pass

    def abort(self) -> None:
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def hexdigest(self) -> str:
        return self._digest.hexdigest()


class FileSink(ArchiveSink):
    """Sink writing into an open binary file object."""

    def __init__(self, fileobj: BinaryIO, target_name: Optional[str] = None) -> None:
        super().__init__(target_name or str(getattr(fileobj, 'name', 'archive file')))
        self._fileobj = fileobj

    def _write_raw(self, data: bytes) -> None:
        self._fileobj.write(data)

    def flush(self) -> None:
        if self._aborted:
            return
        try:
            self._fileobj.flush()
        except OSError as e:
            self._aborted = True
            raise SinkWriteError(e, self.target_name) from e


class SocketSink(ArchiveSink):
    """Sink writing into a connected, blocking stream socket."""

    def __init__(self, sock: socket.socket, target_name: Optional[str] = None) -> None:
        super().__init__(target_name or "connection")
        self._sock = sock

    def _write_raw(self, data: bytes) -> None:
        # sendall loops over partial sends; a bare send() could drop bytes.
        self._sock.sendall(data)


class ArchiveSource(ABC):
    """
    Read side of an archive stream.

    Counts and digests every byte it hands to the tar codec and keeps a short
    tail window of recent bytes, which is how the extractor checks that the
    stream really ended with an end-of-archive block.

    Subclasses implement `_read_raw()`.
    """

    def __init__(self, source_name: str) -> None:
        self.source_name = source_name
        self.bytes_read = 0
        self._digest = xxhash.xxh64()
        self._tail = bytearray()
        self._window = Config.COPY_BUFSIZE + 2 * tarfile.BLOCKSIZE

    def reserve_window(self, bufsize: int) -> None:
        """Keep enough history for a reader pulling `bufsize` bytes at a time."""
        self._window = max(self._window, bufsize + 2 * tarfile.BLOCKSIZE)

    @abstractmethod
    def _read_raw(self, size: int) -> bytes:
        """Read up to `size` bytes; empty bytes at end of stream."""
        raise NotImplementedError

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = Config.COPY_BUFSIZE
        try:
            data = self._read_raw(size)
        except OSError as e:
            raise ExtractError(f"read from {self.source_name} failed: {_describe(e)}", cause=e) from e
        if data:
            self._digest.update(data)
            self.bytes_read += len(data)
            self._tail += data
            if len(self._tail) > self._window:
                del self._tail[:-self._window]
        return data

    def zero_block_at(self, offset: int) -> bool:
        """
        Return True if a full all-zero tar block was read at `offset`.

        Only offsets inside the tail window can be answered; anything older
        or not yet read counts as missing.
        """
        start = offset - (self.bytes_read - len(self._tail))
        if start < 0:
            return False
        block = self._tail[start:start + tarfile.BLOCKSIZE]
        return len(block) == tarfile.BLOCKSIZE and not any(block)

    def drain(self) -> int:
        """Consume the rest of the stream (record padding). Returns bytes read."""
        drained = 0
        while True:
            chunk = self.read(Config.COPY_BUFSIZE)
            if not chunk:
                return drained
            drained += len(chunk)

    @property
    def hexdigest(self) -> str:
        return self._digest.hexdigest()


class FileSource(ArchiveSource):
    """Source reading from an open binary file object."""

    def __init__(self, fileobj: BinaryIO, source_name: Optional[str] = None) -> None:
        super().__init__(source_name or str(getattr(fileobj, 'name', 'archive file')))
        self._fileobj = fileobj

    def _read_raw(self, size: int) -> bytes:
        return self._fileobj.read(size)


class SocketSource(ArchiveSource):
    """Source reading from a connected stream socket."""

    def __init__(self, sock: socket.socket, source_name: Optional[str] = None) -> None:
        super().__init__(source_name or "connection")
        self._sock = sock

    def _read_raw(self, size: int) -> bytes:
        return self._sock.recv(size)


# ============================================================================
# PATH VALIDATION
# ============================================================================

class PathKind(Enum):
    """Transferable filesystem entry kinds."""
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class PathEntry:
    """
    A validated, user supplied path.

    Attributes:
        path: Path as supplied by the caller
        kind: FILE or DIRECTORY
        arcname: Normalized name used inside the archive ('/' separated)
        mode: Permission bits from lstat at validation time
        size: Size from lstat at validation time
    """
    path: str
    kind: PathKind
    arcname: str
    mode: int
    size: int

    @property
    def is_dir(self) -> bool:
        return self.kind is PathKind.DIRECTORY


def _classify(path: str, st: os.stat_result) -> PathKind:
    """Map an lstat result to a PathKind or reject the entry."""
    if stat.S_ISLNK(st.st_mode):
        raise UnsupportedPath(path, "symlink")
    if stat.S_ISDIR(st.st_mode):
        return PathKind.DIRECTORY
    if stat.S_ISREG(st.st_mode):
        return PathKind.FILE
    # sockets, FIFOs, device nodes
    raise UnsupportedPath(path, "special file")


def _arcname(path: str) -> str:
    return os.path.normpath(path).replace(os.sep, '/')


def validate_path(path: str) -> PathEntry:
    """
    Classify a user supplied path, rejecting it before any data is read.

    Rules, in order:
        1. absolute -> UnsupportedPath("absolute")
        2. symbolic link (not followed) -> UnsupportedPath("symlink")
        3. missing -> NotFound
        4. escapes the working directory via '..' -> UnsupportedPath
        5. socket / FIFO / device -> UnsupportedPath("special file")

    Args:
        path: Path string as given by the caller

    Returns:
        PathEntry for a regular file or directory

    Raises:
        UnsupportedPath, NotFound, FileOpenError
    """
    if os.path.isabs(path):
        raise UnsupportedPath(path, "absolute")

    # lstat("alias/") follows the link, so the link test uses the normalized name.
    for candidate in (os.path.normpath(path), path):
        try:
            st = os.lstat(candidate) if path else None
        except (FileNotFoundError, NotADirectoryError):
            st = None
        except OSError as e:
            raise FileOpenError(path, e) from e

        if st is not None and stat.S_ISLNK(st.st_mode):
            raise UnsupportedPath(path, "symlink")
        if st is None:
            raise NotFound(path)

    arcname = _arcname(path)
    if arcname == '..' or arcname.startswith('../'):
        raise UnsupportedPath(path, "parent reference")

    kind = _classify(path, st)
    return PathEntry(path=path, kind=kind, arcname=arcname, mode=stat.S_IMODE(st.st_mode), size=st.st_size)


# ============================================================================
# ARCHIVE PLANNING - Full member list before the first byte is written
# ============================================================================

@dataclass(frozen=True)
class ArchiveMember:
    """One entry to append: filesystem source and its name inside the archive."""
    source: str
    arcname: str
    kind: PathKind


def _raise_walk_error(err: OSError) -> None:
    raise FileOpenError(err.filename or "?", err) from err


def _walk_directory(entry: PathEntry) -> List[ArchiveMember]:
    """
    Expand a directory into members stored relative to the directory itself.

    Sub-directories are emitted as directory members before their contents.
    Names are sorted so the same tree always produces the same stream.
    Links found anywhere in the tree abort the walk.
    """
    members: List[ArchiveMember] = []
    root = entry.path
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames.sort()
        filenames.sort()
        # os.walk lists symlinks to directories under dirnames; _classify rejects them.
        for name in dirnames:
            full = os.path.join(dirpath, name)
            kind = _classify(full, _lstat(full))
            members.append(ArchiveMember(full, _arcname(os.path.relpath(full, root)), kind))
        for name in filenames:
            full = os.path.join(dirpath, name)
            kind = _classify(full, _lstat(full))
            members.append(ArchiveMember(full, _arcname(os.path.relpath(full, root)), kind))
    return members


def _lstat(path: str) -> os.stat_result:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        raise NotFound(path) from None
    except OSError as e:
        raise FileOpenError(path, e) from e


def plan_members(paths: Sequence[str]) -> List[ArchiveMember]:
    """
    Validate every path and expand directories, in caller order.

    Nothing is opened for reading and nothing is written; the first invalid
    path (or link discovered while walking) raises immediately.

    Args:
        paths: Relative paths, files or directories

    Returns:
        Ordered list of members to append
    """
    members: List[ArchiveMember] = []
    for path in paths:
        entry = validate_path(path)
        if entry.is_dir:
            walked = _walk_directory(entry)
            logger.debug(f"{entry.path}: directory (mode {entry.mode:o}), {len(walked)} entries")
            members.extend(walked)
        else:
            logger.debug(f"{entry.path}: file (mode {entry.mode:o}), {format_size(entry.size)}")
            members.append(ArchiveMember(entry.path, entry.arcname, entry.kind))
    return members


# ============================================================================
# ARCHIVE BUILDER
# ============================================================================

class ArchiveBuilder:
    """
    Write a tar stream of validated paths into an ArchiveSink.

    Example:
        >>> with open("out.tar", "wb") as f:
        ...     stats = ArchiveBuilder(FileSink(f)).build(["docs", "notes.txt"])
    """

    def __init__(self, sink: ArchiveSink, bufsize: Optional[int] = None,
                 archive_format: Optional[int] = None) -> None:
        self.sink = sink
        self.bufsize = bufsize or Config.COPY_BUFSIZE
        self.archive_format = archive_format if archive_format is not None else Config.ARCHIVE_FORMAT
        self._finished = False

    def build(self, paths: Sequence[str]) -> TransferStats:
        """
        Validate `paths`, then stream them as one archive.

        Raises:
            UnsupportedPath, NotFound: before any byte reaches the sink
            FileOpenError: a file could not be read; the sink holds a
                truncated archive without trailer
            SinkWriteError: the sink rejected a write
        """
        return self.write_members(plan_members(paths))

    def write_members(self, members: Sequence[ArchiveMember]) -> TransferStats:
        """Append already planned members, then finish the archive."""
        if self._finished:
            raise RuntimeError("archive already finished")
        self._finished = True

        start = time.perf_counter()
        stats = TransferStats()
        archive = tarfile.open(fileobj=self.sink, mode="w|", bufsize=self.bufsize,  # type: ignore[call-overload]
                               format=self.archive_format)
        with archive:
            try:
                for member in members:
                    self._append(archive, member, stats)
            except BaseException:
                # Leaving the with-block with an exception skips the trailer;
                # aborting keeps the codec's buffered bytes out of the sink too.
                self.sink.abort()
                raise
        self.sink.flush()

        stats.stream_bytes = self.sink.bytes_written
        stats.stream_digest = self.sink.hexdigest
        stats.elapsed = time.perf_counter() - start
        logger.info(f"archive finished: {stats.num_files} files, {stats.num_dirs} directories, "
                    f"{format_size(stats.stream_bytes)} streamed")
        return stats

    def _append(self, archive: tarfile.TarFile, member: ArchiveMember, stats: TransferStats) -> None:
        if member.kind is PathKind.DIRECTORY:
            try:
                tarinfo = archive.gettarinfo(name=member.source, arcname=member.arcname)
            except OSError as e:
                raise FileOpenError(member.source, e) from e
            archive.addfile(tarinfo)
            stats.num_dirs += 1
            logger.debug(f"+ {member.arcname}/")
            return

        try:
            f = open(member.source, 'rb')
        except OSError as e:
            raise FileOpenError(member.source, e) from e
        with f:
            try:
                # Metadata comes from the open handle, not the earlier lstat.
                tarinfo = archive.gettarinfo(arcname=member.arcname, fileobj=f)
                archive.addfile(tarinfo, f)
            except OSError as e:
                raise FileOpenError(member.source, e) from e
        stats.num_files += 1
        stats.total_size += tarinfo.size
        logger.debug(f"+ {member.arcname} ({tarinfo.size} bytes, mode {tarinfo.mode:o})")


# ============================================================================
# ARCHIVE EXTRACTOR
# ============================================================================

class ArchiveExtractor:
    """
    Unpack a tar stream from an ArchiveSource under a destination directory.

    Entries are extracted strictly in stream order. Directory permissions and
    times are applied after all entries are written, deepest first, so a
    read-only directory does not block writing its own contents.
    """

    def __init__(self, source: ArchiveSource, bufsize: Optional[int] = None) -> None:
        self.source = source
        self.bufsize = bufsize or Config.COPY_BUFSIZE
        self.source.reserve_window(self.bufsize)
        self._pending_dir_attrs: Dict[str, tarfile.TarInfo] = {}

    def extract(self, destination: str) -> TransferStats:
        """
        Recreate every entry of the stream under `destination`.

        Args:
            destination: Directory root, created with parents if missing

        Returns:
            TransferStats for the received archive

        Raises:
            ExtractError: malformed or truncated stream, missing trailer,
                unsafe entry, or a filesystem write failure
        """
        start = time.perf_counter()
        dest = os.path.realpath(destination)
        try:
            os.makedirs(dest, exist_ok=True)
        except OSError as e:
            raise ExtractError(f"cannot create destination {destination}: {_describe(e)}", cause=e) from e

        stats = TransferStats()
        try:
            # errorlevel=2 turns failed chmod/utime/chown on members into errors.
            with tarfile.open(fileobj=self.source, mode="r|", bufsize=self.bufsize,  # type: ignore[call-overload]
                              errorlevel=2) as archive:
                for tarinfo in archive:
                    self._extract_one(archive, tarinfo, dest, stats)
                end_offset = archive.offset
        except tarfile.ExtractError as e:
            raise ExtractError(f"cannot restore entry under {destination}: {e}", cause=e) from e
        except tarfile.TarError as e:
            raise ExtractError(f"malformed archive stream: {e}", cause=e) from e
        except OSError as e:
            raise ExtractError(f"cannot write under {destination}: {e}", cause=e) from e

        if not self.source.zero_block_at(end_offset):
            raise ExtractError(
                f"archive stream from {self.source.source_name} ended without an end-of-archive marker"
            )
        self.source.drain()
        self._finalize_directory_attributes()

        stats.stream_bytes = self.source.bytes_read
        stats.stream_digest = self.source.hexdigest
        stats.elapsed = time.perf_counter() - start
        logger.info(f"archive extracted: {stats.num_files} files, {stats.num_dirs} directories "
                    f"into {destination}")
        return stats

    def _extract_one(self, archive: tarfile.TarFile, tarinfo: tarfile.TarInfo,
                     dest: str, stats: TransferStats) -> None:
        self._check_member(tarinfo, dest)
        if tarinfo.isdir() and os.path.normpath(tarinfo.name) == '.':
            return
        target = os.path.join(dest, tarinfo.name)
        if tarinfo.isdir():
            archive.extract(tarinfo, path=dest, set_attrs=False, filter=self._keep_member)
            self._pending_dir_attrs[target] = tarinfo
            stats.num_dirs += 1
            logger.debug(f"extracted {tarinfo.name}/")
            return
        archive.extract(tarinfo, path=dest, set_attrs=True, numeric_owner=True, filter=self._keep_member)
        stats.num_files += 1
        stats.total_size += tarinfo.size
        logger.debug(f"extracted {tarinfo.name} ({tarinfo.size} bytes)")

    @staticmethod
    def _keep_member(tarinfo: tarfile.TarInfo, path: str) -> tarfile.TarInfo:
        # Members were checked by _check_member; keep modes exactly as stored.
        return tarinfo

    def _check_member(self, tarinfo: tarfile.TarInfo, dest: str) -> None:
        name = tarinfo.name
        if not name or os.path.isabs(name) or name.startswith('/'):
            raise ExtractError(f"{name!r}: absolute member names are not allowed")
        target = os.path.realpath(os.path.join(dest, name))
        if os.path.commonpath([dest, target]) != dest:
            raise ExtractError(f"{name!r}: member would be written outside the destination")
        if tarinfo.issym() or tarinfo.islnk():
            raise ExtractError(f"{name!r}: link members are not supported")
        if not (tarinfo.isreg() or tarinfo.isdir()):
            raise ExtractError(f"{name!r}: unsupported member type {tarinfo.type!r}")

    def _finalize_directory_attributes(self) -> None:
        for target, tarinfo in sorted(
            self._pending_dir_attrs.items(), key=lambda kv: kv[0].count(os.sep), reverse=True
        ):
            try:
                os.chmod(target, tarinfo.mode & 0o7777)
                os.utime(target, (tarinfo.mtime, tarinfo.mtime))
            except OSError as e:
                raise ExtractError(f"cannot set attributes on {target}: {_describe(e)}", cause=e) from e
        self._pending_dir_attrs.clear()


# ============================================================================
# TRANSPORT - Outbound connection, single-shot listener
# ============================================================================

def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a `host:port` string. IPv6 hosts go in brackets: `[::1]:9000`.

    Raises:
        ConfigurationError: malformed address or port out of range
    """
    host, sep, port_text = address.rpartition(':')
    if not sep or not host or not port_text:
        raise ConfigurationError(f"invalid address {address!r}, expected HOST:PORT")
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError(f"invalid port in address {address!r}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"port out of range in address {address!r}")
    return host, port


def open_connection(host: str, port: int, connect_timeout: Optional[float] = None,
                    io_timeout: Optional[float] = None) -> socket.socket:
    """
    Connect to host:port once. The returned socket is in blocking mode,
    bounded by `io_timeout` per operation when one is given.

    Raises:
        ConnectError: the connection could not be established
    """
    address = f"{host}:{port}"
    try:
        sock = socket.create_connection((host, port), timeout=connect_timeout)
    except OSError as e:
        raise ConnectError(address, e) from e
    sock.settimeout(io_timeout)
    logger.info(f"connected to {address}")
    return sock


class SingleShotListener:
    """
    TCP listener that accepts exactly one peer, then stops listening.

    Example:
        >>> with SingleShotListener(0, "127.0.0.1") as listener:
        ...     host, port = listener.address
        ...     conn, peer = listener.accept(timeout=30)
    """

    def __init__(self, port: int, host: Optional[str] = None) -> None:
        self.port = port
        self.host = host if host is not None else Config.LISTEN_ADDRESS
        self._sock: Optional[socket.socket] = None
        self._used = False

    def open(self) -> 'SingleShotListener':
        family = socket.AF_INET6 if ':' in self.host else socket.AF_INET
        try:
            self._sock = socket.create_server((self.host, self.port), family=family, backlog=1)
        except OSError as e:
            raise TransportError(f"cannot listen on {self.host}:{self.port}: {_describe(e)}", cause=e) from e
        logger.info(f"listening for connection on {self.host}:{self.address[1]}")
        return self

    def __enter__(self) -> 'SingleShotListener':
        return self.open()

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); useful when port 0 was requested."""
        if self._sock is None:
            raise RuntimeError("listener is not open")
        sockname = self._sock.getsockname()
        return sockname[0], sockname[1]

    def accept(self, timeout: Optional[float] = None,
               io_timeout: Optional[float] = None) -> Tuple[socket.socket, Any]:
        """
        Wait for the single peer.

        Args:
            timeout: Seconds to wait; None waits indefinitely
            io_timeout: Timeout applied to the accepted connection

        Raises:
            NoConnection: nobody connected in time
        """
        if self._sock is None:
            raise RuntimeError("listener is not open")
        if self._used:
            raise RuntimeError("listener already accepted its connection")
        port = self.address[1]
        self._sock.settimeout(timeout)
        try:
            conn, peer = self._sock.accept()
        except socket.timeout:
            raise NoConnection(port, timeout) from None
        finally:
            self._used = True
            self.close()
        conn.settimeout(io_timeout)
        logger.info(f"accepted connection from {peer[0]}:{peer[1]}")
        return conn, peer

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None


# ============================================================================
# TRANSFER ENTRY POINTS
# ============================================================================

def send_archive(paths: Sequence[str], address: str, connect_timeout: Optional[float] = None,
                 io_timeout: Optional[float] = None) -> TransferStats:
    """
    Stream an archive of `paths` to `address` ("host:port").

    Paths are validated and walked before connecting, so a bad path never
    opens a connection.

    Returns:
        TransferStats of the sent stream
    """
    host, port = parse_address(address)
    members = plan_members(paths)
    if connect_timeout is None:
        connect_timeout = Config.CONNECT_TIMEOUT
    with open_connection(host, port, connect_timeout, io_timeout) as sock:
        stats = ArchiveBuilder(SocketSink(sock, address)).write_members(members)
        try:
            sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            raise SinkWriteError(e, address) from e
    return stats


def serve_once(listener: SingleShotListener, destination: str, accept_timeout: Optional[float] = None,
               io_timeout: Optional[float] = None) -> TransferStats:
    """Accept the listener's single peer and extract its archive into `destination`."""
    conn, peer = listener.accept(accept_timeout, io_timeout)
    with conn:
        source = SocketSource(conn, f"{peer[0]}:{peer[1]}")
        return ArchiveExtractor(source).extract(destination)


def receive_archive(port: int, destination: str, listen_address: Optional[str] = None,
                    accept_timeout: Optional[float] = None,
                    io_timeout: Optional[float] = None) -> TransferStats:
    """
    Listen on `port`, accept one connection and unpack it under `destination`.

    The destination is created only after a peer has connected.

    Raises:
        NoConnection: nobody connected within `accept_timeout`
        ExtractError: the received stream could not be unpacked
    """
    with SingleShotListener(port, listen_address) as listener:
        return serve_once(listener, destination, accept_timeout, io_timeout)


def write_archive_file(paths: Sequence[str], archive_path: str) -> TransferStats:
    """
    Write an archive of `paths` to `archive_path`.

    The output file is only created once every path has been validated.
    """
    members = plan_members(paths)
    try:
        f = open(archive_path, 'wb')
    except OSError as e:
        raise SinkWriteError(e, archive_path) from e
    with f:
        return ArchiveBuilder(FileSink(f, archive_path)).write_members(members)


def extract_archive_file(archive_path: str, destination: str) -> TransferStats:
    """Unpack the archive file at `archive_path` under `destination`."""
    try:
        f = open(archive_path, 'rb')
    except OSError as e:
        raise ExtractError(f"cannot open archive {archive_path}: {_describe(e)}", cause=e) from e
    with f:
        return ArchiveExtractor(FileSource(f, archive_path)).extract(destination)


# ============================================================================
# CLI - Thin boundary: options, exit codes, messages
# ============================================================================

SEND = "send"
RECEIVE = "receive"


@dataclass
class TransferOptions:
    """Validated settings for one invocation."""
    mode: str = ""
    mappings: List[str] = field(default_factory=list)   # --mappings, -m
    serve_address: Optional[str] = None                 # --serve-address, -s
    archive_file: Optional[str] = None                  # --output, -o / --input, -i
    listen_port: Optional[int] = None                   # --listen-port, -p
    listen_address: Optional[str] = None                # --listen-address
    listen_destination: Optional[str] = None            # --listen-destination, -d
    connect_timeout: Optional[float] = None             # --connect-timeout
    accept_timeout: Optional[float] = None              # --accept-timeout
    io_timeout: Optional[float] = None                  # --io-timeout
    verbose: int = 0                                    # --verbose, -v
    stats: bool = False                                 # --stats


def _timeout(text: str) -> float:
    value = float(text)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive: {text}")
    return value


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser. Mode checks happen in validate_options()."""
    parser = argparse.ArgumentParser(
        prog='tarpipe',
        description="Transfer a tarball of the given paths to a peer or a file, "
                    "or receive one and unpack it.",
        epilog="send:    tarpipe -m PATH... (-s HOST:PORT | -o FILE)\n"
               "receive: tarpipe -d DIR (-p PORT | -i FILE)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    send = parser.add_argument_group('send')
    send.add_argument('-m', '--mappings', nargs='+', default=[], metavar='PATH',
                      help='relative files or directories to place in the archive')
    send.add_argument('-s', '--serve-address', metavar='HOST:PORT',
                      help='address to stream the archive to')
    send.add_argument('-o', '--output', metavar='FILE',
                      help='write the archive to FILE instead of a connection')
    send.add_argument('--connect-timeout', type=_timeout, metavar='SECS',
                      help=f'seconds to wait for the connection (default {Config.CONNECT_TIMEOUT})')

    listen = parser.add_argument_group('receive')
    listen.add_argument('-p', '--listen-port', type=int, metavar='PORT',
                        help='accept one TCP connection on PORT')
    listen.add_argument('-d', '--listen-destination', metavar='DIR',
                        help='directory where received files are saved')
    listen.add_argument('-i', '--input', metavar='FILE',
                        help='extract the archive FILE instead of listening')
    listen.add_argument('--listen-address', metavar='ADDR',
                        help=f'address to bind (default {Config.LISTEN_ADDRESS})')
    listen.add_argument('--accept-timeout', type=_timeout, metavar='SECS',
                        help='give up if no peer connects within SECS (default: wait)')

    parser.add_argument('--io-timeout', type=_timeout, metavar='SECS',
                        help='socket timeout once connected (default: none)')
    parser.add_argument('--stats', action='store_true', help='print transfer statistics')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='increase verbosity')
    parser.add_argument('--no-color', action='store_true', help='disable colored output')
    return parser


def validate_options(options: TransferOptions) -> TransferOptions:
    """
    Enforce the mode rules and fill in `options.mode`.

    send:    mappings plus exactly one of serve_address / archive_file
    receive: listen_destination plus exactly one of listen_port / archive_file
    """
    sending = bool(options.mappings or options.serve_address)
    receiving = options.listen_port is not None or options.listen_destination is not None

    if sending and receiving:
        raise ConfigurationError("send options (-m, -s) and receive options (-p, -d) are mutually exclusive")
    if not sending and not receiving:
        if options.archive_file:
            raise ConfigurationError("an archive file needs either --mappings or --listen-destination")
        raise ConfigurationError("invalid calling mode: nothing to send or receive")

    if sending:
        if not options.mappings:
            raise ConfigurationError("--serve-address requires --mappings")
        if options.serve_address and options.archive_file:
            raise ConfigurationError("--serve-address and --output are mutually exclusive")
        if not options.serve_address and not options.archive_file:
            raise ConfigurationError("--mappings requires --serve-address or --output")
        if options.serve_address:
            parse_address(options.serve_address)
        options.mode = SEND
        return options

    if not options.listen_destination:
        raise ConfigurationError("--listen-port requires --listen-destination")
    if options.listen_port is not None and options.archive_file:
        raise ConfigurationError("--listen-port and --input are mutually exclusive")
    if options.listen_port is None and not options.archive_file:
        raise ConfigurationError("--listen-destination requires --listen-port or --input")
    if options.listen_port is not None and not 0 < options.listen_port < 65536:
        raise ConfigurationError(f"listen port out of range: {options.listen_port}")
    options.mode = RECEIVE
    return options


def parse_args(argv: Optional[List[str]] = None,
               parser: Optional[argparse.ArgumentParser] = None) -> TransferOptions:
    """
    Parse command-line arguments into validated TransferOptions.

    Raises:
        ConfigurationError: invalid or conflicting mode arguments
    """
    parser = parser or create_parser()
    parsed = parser.parse_args(argv)
    if parsed.output and parsed.input:
        raise ConfigurationError("--output and --input are mutually exclusive")
    if parsed.no_color:
        Config.USE_COLORS = False

    options = TransferOptions(
        mappings=list(parsed.mappings),
        serve_address=parsed.serve_address,
        archive_file=parsed.output or parsed.input,
        listen_port=parsed.listen_port,
        listen_address=parsed.listen_address,
        listen_destination=parsed.listen_destination,
        connect_timeout=parsed.connect_timeout,
        accept_timeout=parsed.accept_timeout,
        io_timeout=parsed.io_timeout,
        verbose=parsed.verbose,
        stats=parsed.stats,
    )
    if parsed.output and options.listen_destination is not None:
        raise ConfigurationError("--output writes an archive; use --input to extract one")
    if parsed.input and options.mappings:
        raise ConfigurationError("--input extracts an archive; use --output to write one")
    return validate_options(options)


def run_transfer(options: TransferOptions) -> TransferStats:
    """Run the single transfer described by validated `options`."""
    if options.mode == SEND:
        if options.archive_file:
            return write_archive_file(options.mappings, options.archive_file)
        assert options.serve_address is not None
        return send_archive(
            options.mappings,
            options.serve_address,
            connect_timeout=options.connect_timeout,
            io_timeout=options.io_timeout if options.io_timeout is not None else Config.IO_TIMEOUT,
        )

    if options.mode == RECEIVE:
        assert options.listen_destination is not None
        if options.archive_file:
            return extract_archive_file(options.archive_file, options.listen_destination)
        assert options.listen_port is not None
        print(Colors.info("listening to connection..."))
        return receive_archive(
            options.listen_port,
            options.listen_destination,
            listen_address=options.listen_address,
            accept_timeout=options.accept_timeout if options.accept_timeout is not None else Config.ACCEPT_TIMEOUT,
            io_timeout=options.io_timeout if options.io_timeout is not None else Config.IO_TIMEOUT,
        )

    raise ConfigurationError(f"invalid mode: {options.mode!r}")


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logger.setLevel(level)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, the error's code otherwise)
    """
    parser = create_parser()
    try:
        options = parse_args(argv, parser)
    except ConfigurationError as e:
        print(Colors.error(f"tarpipe: {e}"), file=sys.stderr)
        parser.print_help(sys.stderr)
        return e.code

    _configure_logging(options.verbose)

    try:
        stats = run_transfer(options)
    except TarpipeError as e:
        print(Colors.error(f"tarpipe error: {e} (code {e.code})"), file=sys.stderr)
        return e.code

    if options.stats:
        stats.print_stats()
    print(Colors.success("finished"))
    return 0


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
