"""Access to the files inside an IPSW, either a zip archive or a directory."""

from __future__ import annotations

import logging
import os
import plistlib
import stat
import threading
import zipfile
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

_BUFSIZE = 0x100000

_cancelled = threading.Event()

ProgressCallback = Callable[[float], None]


class IpswError(Exception):
    """Raised when an IPSW or a file inside it cannot be accessed."""


class ExtractionCancelled(IpswError):
    """Raised when an extraction was interrupted by :func:`cancel`."""


def cancel() -> None:
    """Ask a running extraction to stop as soon as possible."""
    _cancelled.set()


class IpswArchive:
    """An opened IPSW: a zip archive or a directory of extracted files."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        try:
            st = os.stat(self.path)
        except OSError as exc:
            raise IpswError(f"ipsw_open {self.path}: {exc.strerror}") from exc
        self._zip: zipfile.ZipFile | None = None
        if not stat.S_ISDIR(st.st_mode):
            try:
                self._zip = zipfile.ZipFile(self.path)
            except (zipfile.BadZipFile, OSError) as exc:
                raise IpswError(f"zip_open: {self.path}: {exc}") from exc

    @property
    def is_directory(self) -> bool:
        return self._zip is None

    def close(self) -> None:
        """Release the underlying zip archive, if any."""
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def __enter__(self) -> IpswArchive:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _member(self, name: str) -> zipfile.ZipInfo:
        assert self._zip is not None
        try:
            return self._zip.getinfo(name)
        except KeyError as exc:
            raise IpswError(f"'{name}' not found in archive") from exc

    def _path_of(self, name: str) -> str:
        return os.path.join(self.path, name)

    def file_exists(self, name: str) -> bool:
        """Return whether ``name`` is present (and readable) in the IPSW."""
        if self._zip is not None:
            try:
                self._zip.getinfo(name)
            except KeyError:
                return False
            return True
        return os.access(self._path_of(name), os.R_OK)

    def file_size(self, name: str) -> int:
        """Return the uncompressed size of ``name``."""
        if self._zip is not None:
            return self._member(name).file_size
        try:
            return os.stat(self._path_of(name)).st_size
        except OSError as exc:
            raise IpswError(f"{self._path_of(name)}: {exc.strerror}") from exc

    def read(self, name: str) -> bytes:
        """Return the whole content of ``name``."""
        if self._zip is not None:
            info = self._member(name)
            try:
                data = self._zip.read(info)
            except (zipfile.BadZipFile, OSError, RuntimeError) as exc:
                raise IpswError(f"zip_fread: {name}: {exc}") from exc
            if len(data) != info.file_size:
                raise IpswError(f"zip_fread: {name}")
            return data
        filepath = self._path_of(name)
        try:
            with open(filepath, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise IpswError(f"fopen failed for {filepath}: {exc.strerror}") from exc

    def extract_to_file(
        self,
        name: str,
        outfile: str | os.PathLike[str],
        progress: ProgressCallback | None = None,
    ) -> None:
        """Copy ``name`` to ``outfile``, reporting percentages to ``progress``.

        Raises :class:`ExtractionCancelled` if :func:`cancel` was called
        while the copy was running.
        """
        _cancelled.clear()
        outfile = os.fspath(outfile)
        if self._zip is not None:
            self._extract_zip_member(name, outfile, progress)
        else:
            self._copy_directory_file(name, outfile, progress)
        if _cancelled.is_set():
            raise ExtractionCancelled(f"extraction of {name} was cancelled")

    def _extract_zip_member(
        self, name: str, outfile: str, progress: ProgressCallback | None
    ) -> None:
        assert self._zip is not None
        info = self._member(name)
        total = info.file_size
        try:
            source = self._zip.open(info)
        except (zipfile.BadZipFile, OSError, RuntimeError) as exc:
            raise IpswError(f"zip_fopen_index: {name}: {exc}") from exc
        with source:
            try:
                target = open(outfile, "wb")
            except OSError as exc:
                raise IpswError(f"Unable to open output file: {outfile}") from exc
            with target:
                done = 0
                while done < total and not _cancelled.is_set():
                    try:
                        chunk = source.read(min(_BUFSIZE, total - done))
                    except (zipfile.BadZipFile, OSError) as exc:
                        raise IpswError(f"zip_fread: {name}: {exc}") from exc
                    if not chunk:
                        raise IpswError(f"zip_fread: {name}")
                    try:
                        target.write(chunk)
                    except OSError as exc:
                        raise IpswError(f"fwrite: {outfile}: {exc}") from exc
                    done += len(chunk)
                    if progress is not None:
                        progress(done / total * 100.0)

    def _copy_directory_file(
        self, name: str, outfile: str, progress: ProgressCallback | None
    ) -> None:
        filepath = self._path_of(name)
        if not os.path.exists(filepath):
            raise IpswError(f"realpath failed on {filepath}: No such file or directory")
        actual_source = os.path.realpath(filepath)
        if os.path.exists(outfile) and os.path.realpath(outfile) == actual_source:
            return
        try:
            source = open(actual_source, "rb")
        except OSError as exc:
            raise IpswError(f"fopen: {actual_source}: {exc.strerror}") from exc
        with source:
            total = os.fstat(source.fileno()).st_size
            try:
                target = open(outfile, "wb")
            except OSError as exc:
                raise IpswError(f"fopen: {outfile}: {exc.strerror}") from exc
            with target:
                done = 0
                while not _cancelled.is_set():
                    try:
                        chunk = source.read(_BUFSIZE)
                        if not chunk:
                            break
                        target.write(chunk)
                    except OSError as exc:
                        raise IpswError(f"copy of {actual_source} failed: {exc}") from exc
                    done += len(chunk)
                    if progress is not None and total:
                        progress(done / total * 100.0)


def is_directory(path: str | os.PathLike[str]) -> bool:
    """Return whether ``path`` is an extracted IPSW directory."""
    return os.path.isdir(path)


def file_exists(ipsw: str | os.PathLike[str], name: str) -> bool:
    """Return whether ``name`` exists in the IPSW; False if it cannot be opened."""
    try:
        with IpswArchive(ipsw) as archive:
            return archive.file_exists(name)
    except IpswError:
        return False


def file_size(ipsw: str | os.PathLike[str], name: str) -> int:
    """Return the size of ``name`` inside the IPSW."""
    with IpswArchive(ipsw) as archive:
        return archive.file_size(name)


def extract_to_memory(ipsw: str | os.PathLike[str], name: str) -> bytes:
    """Return the content of ``name`` inside the IPSW."""
    with IpswArchive(ipsw) as archive:
        return archive.read(name)


def extract_to_file(
    ipsw: str | os.PathLike[str],
    name: str,
    outfile: str | os.PathLike[str],
    progress: ProgressCallback | None = None,
) -> None:
    """Copy ``name`` from the IPSW to ``outfile``."""
    with IpswArchive(ipsw) as archive:
        archive.extract_to_file(name, outfile, progress)


def _parse_plist(data: bytes, name: str) -> Any:
    try:
        return plistlib.loads(data)
    except (plistlib.InvalidFileException, ValueError) as exc:
        raise IpswError(f"Cannot parse plist data from {name}") from exc


def extract_build_manifest(ipsw: str | os.PathLike[str]) -> tuple[Any, bool]:
    """Return the build manifest and whether the firmware needs TSS signing.

    Older firmwares carry an unpersonalised ``BuildManifesto.plist``; newer
    ones a ``BuildManifest.plist`` that requires TSS.
    """
    if file_exists(ipsw, "BuildManifesto.plist"):
        try:
            data = extract_to_memory(ipsw, "BuildManifesto.plist")
        except IpswError:
            pass
        else:
            return _parse_plist(data, "BuildManifesto.plist"), False
    try:
        data = extract_to_memory(ipsw, "BuildManifest.plist")
    except IpswError as exc:
        raise IpswError(f"Unable to extract BuildManifest from {os.fspath(ipsw)}") from exc
    return _parse_plist(data, "BuildManifest.plist"), True


def extract_restore_plist(ipsw: str | os.PathLike[str]) -> Any:
    """Return the parsed ``Restore.plist`` of the IPSW."""
    try:
        data = extract_to_memory(ipsw, "Restore.plist")
    except IpswError as exc:
        raise IpswError(f"Unable to extract Restore.plist from {os.fspath(ipsw)}") from exc
    return _parse_plist(data, "Restore.plist")