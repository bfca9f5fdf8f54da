"""Signed-firmware lookup, firmware downloads and IPSW summaries."""

from __future__ import annotations

import contextlib
import copy
import hashlib
import json
import logging
import os
import plistlib
import re
import shutil
import urllib.request
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from ipswkit.ipsw import IpswError, extract_to_memory

logger = logging.getLogger(__name__)

SIGNED_FIRMWARES_URL = "https://api.ipsw.me/v3/device/{product}"

_SHA1_SIZE = 20
_ZERO_SHA1 = bytes(_SHA1_SIZE)
_ZIP_MAGIC = b"PK\x03\x04"
_VERSIONS_KEY = "MobileDeviceSoftwareVersionsByVersion"
_PRODUCTS_KEY = "MobileDeviceSoftwareVersions"

_HEX_PAIR = re.compile(r"[0-9a-fA-F]{1,2}")
_DECIMAL_PREFIX = re.compile(r"\s*\+?(\d+)")
_C_UINT_PREFIX = re.compile(r"\s*\+?(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9]\d*)")

BytesFetcher = Callable[[str], "bytes | str"]
FileFetcher = Callable[[str, str], None]


class FirmwareError(Exception):
    """Raised when firmware information cannot be obtained or verified."""


def parse_sha1(hexdigest: str) -> bytes:
    """Turn a 40-character hex string into the 20 bytes of a SHA-1 digest.

    Each pair is read like ``%02x``: leading hex digits count, anything
    else in a pair gives a zero byte.
    """
    if len(hexdigest) != 2 * _SHA1_SIZE:
        raise FirmwareError("unexpected size of sha1sum")
    result = bytearray()
    for start in range(0, len(hexdigest), 2):
        match = _HEX_PAIR.match(hexdigest, start, start + 2)
        result.append(int(match.group(), 16) if match else 0)
    return bytes(result)


def sha1_matches(path: str | os.PathLike[str], expected: bytes) -> bool:
    """Return whether the SHA-1 of the file at ``path`` equals ``expected``."""
    digest = hashlib.sha1()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(8192), b""):
            digest.update(chunk)
    return digest.digest() == bytes(expected)


def signed_firmwares(data: Any, product: str) -> list[dict[str, Any]]:
    """Return the firmwares of ``product`` that are marked as signed."""
    if not isinstance(data, Mapping):
        raise FirmwareError("Failed to parse json data.")
    node = data.get(product)
    if not isinstance(node, Mapping):
        raise FirmwareError("Unexpected json data returned?!")
    firmwares = node.get("firmwares")
    if not isinstance(firmwares, list):
        raise FirmwareError("Unexpected json data returned?!")
    return [
        copy.deepcopy(fw)
        for fw in firmwares
        if isinstance(fw, Mapping) and fw.get("signed") is True
    ]


def _fetch_bytes(url: str) -> bytes:
    with urllib.request.urlopen(url) as response:
        return response.read()


def _fetch_to_file(url: str, path: str) -> None:
    with urllib.request.urlopen(url) as response, open(path, "wb") as target:
        shutil.copyfileobj(response, target)


def get_signed_firmwares(
    product: str, fetch: BytesFetcher | None = None
) -> list[dict[str, Any]]:
    """Download the firmware list for ``product`` and return the signed ones.

    ``fetch`` takes a URL and returns the response body.
    """
    if not product:
        raise FirmwareError("a product type is required")
    fetch = fetch or _fetch_bytes
    url = SIGNED_FIRMWARES_URL.format(product=product)
    try:
        body = fetch(url)
    except Exception as exc:
        raise FirmwareError(f"Download from {url} failed.") from exc
    try:
        data = json.loads(body)
    except (ValueError, TypeError) as exc:
        raise FirmwareError("Failed to parse json data.") from exc
    return signed_firmwares(data, product)


def _dig(node: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node


def _leading_decimal(text: str) -> int:
    match = _DECIMAL_PREFIX.match(text)
    return int(match.group(1)) if match else 0


def latest_firmware(version_data: Any, product: str) -> tuple[str, bytes]:
    """Find the newest firmware URL and SHA-1 for ``product`` in version data.

    The SHA-1 is all zeros when the version data does not carry one.
    """
    versions = _dig(version_data, _VERSIONS_KEY)
    if not isinstance(versions, Mapping):
        raise FirmwareError(f"Can't find {_VERSIONS_KEY} dict in version data")

    major = 0
    for key in versions:
        if _dig(versions, key, _PRODUCTS_KEY, product) is not None:
            major = max(major, _leading_decimal(str(key)))
    if major == 0:
        raise FirmwareError("Can't find major version?!")

    majstr = str(major)
    base = (_VERSIONS_KEY, majstr, _PRODUCTS_KEY, product)

    restore = _dig(version_data, *base, "Unknown", "Universal", "Restore")
    if restore is None:
        raise FirmwareError("Can't get Unknown/Universal/Restore node?!")
    build = _dig(restore, "BuildVersion")
    if not isinstance(build, str):
        raise FirmwareError("Can't get build version node?!")

    node = _dig(version_data, *base, build)
    if node is None:
        raise FirmwareError(f"Can't get {_PRODUCTS_KEY}/{build} node?!")

    same_as = _dig(node, "SameAs")
    if isinstance(same_as, str):
        node = _dig(version_data, *base, same_as)
        if not node:
            raise FirmwareError(f"Can't get {_PRODUCTS_KEY}/{product} dict")

    update_build = _dig(node, "Update", "BuildVersion")
    if isinstance(update_build, str):
        node = _dig(version_data, *base, update_build)

    url = _dig(node, "Restore", "FirmwareURL")
    if not isinstance(url, str):
        raise FirmwareError("Can't get FirmwareURL node")

    sha1 = _ZERO_SHA1
    text = _dig(node, "Restore", "FirmwareSHA1")
    if isinstance(text, str) and len(text) == 2 * _SHA1_SIZE:
        sha1 = parse_sha1(text)
    return url, sha1


@contextlib.contextmanager
def _file_lock(path: str) -> Iterator[None]:
    try:
        import fcntl
    except ImportError:
        yield
        return
    try:
        handle = open(path, "a+b")
    except OSError:
        logger.warning("Could not lock file '%s'", path)
        yield
        return
    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError:
            logger.warning("Could not lock file '%s'", path)
        try:
            yield
        finally:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            except OSError:
                logger.warning("Could not unlock file '%s'", path)


def _remove(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)


def download_firmware(
    url: str,
    sha1: bytes | None = None,
    todir: str | os.PathLike[str] | None = None,
    fetch: FileFetcher | None = None,
) -> str:
    """Make sure the firmware at ``url`` is present locally and return its path.

    An existing file is reused when its SHA-1 matches; an all-zero or missing
    ``sha1`` disables verification. ``fetch`` takes a URL and a destination
    path and writes the file there.
    """
    if "/" not in url:
        raise FirmwareError("can't get local filename for firmware ipsw")
    filename = url.rsplit("/", 1)[1]
    local = os.path.join(os.fspath(todir), filename) if todir else filename
    expected = bytes(sha1) if sha1 else _ZERO_SHA1
    verify = expected != _ZERO_SHA1
    fetch = fetch or _fetch_to_file

    with _file_lock(local + ".lock"):
        need_download = True
        if os.path.isfile(local):
            need_download = False
            if verify:
                logger.info("Verifying '%s'...", local)
                try:
                    matches = sha1_matches(local, expected)
                except OSError:
                    matches = False
                if matches:
                    logger.info("Checksum matches.")
                else:
                    logger.info("Checksum does not match.")
                    need_download = True

        if need_download:
            if url.startswith("protected:"):
                raise FirmwareError(
                    f"Can't download '{filename}' because it needs a purchase."
                )
            _remove(local)
            logger.info("Downloading firmware (%s)", url)
            try:
                fetch(url, local)
            except Exception as exc:
                _remove(local)
                raise FirmwareError(f"Download of {url} failed") from exc
            if verify:
                logger.info("Verifying '%s'...", local)
                try:
                    matches = sha1_matches(local, expected)
                except OSError as exc:
                    raise FirmwareError(
                        f"Can't open '{local}' for checksum verification"
                    ) from exc
                if not matches:
                    _remove(local)
                    raise FirmwareError("File download failed (checksum mismatch).")
                logger.info("Checksum matches.")
    return local


def download_latest_firmware(
    version_data: Any,
    product: str,
    todir: str | os.PathLike[str] | None = None,
    fetch: FileFetcher | None = None,
) -> str:
    """Download the newest firmware for ``product`` and return its local path."""
    try:
        url, sha1 = latest_firmware(version_data, product)
    except FirmwareError as exc:
        raise FirmwareError(f"can't get URL for latest firmware: {exc}") from exc
    if "/" not in url:
        raise FirmwareError("can't get local filename for firmware ipsw")
    logger.info("Latest firmware is %s", url.rsplit("/", 1)[1])
    return download_firmware(url, sha1, todir, fetch)


def _c_uint(value: Any) -> int:
    if isinstance(value, str):
        match = _C_UINT_PREFIX.match(value)
        if not match:
            return 0
        digits = match.group(1)
        if digits[:2] in ("0x", "0X"):
            number = int(digits[2:], 16)
        elif len(digits) > 1 and digits[0] == "0":
            number = int(digits[1:], 8)
        else:
            number = int(digits)
        return number & 0xFFFFFFFFFFFFFFFF
    if isinstance(value, int) and not isinstance(value, bool):
        return value & 0xFFFFFFFFFFFFFFFF
    return 0


def _text(value: Any) -> str:
    return value if isinstance(value, str) else "(null)"


def _load_manifest(path: str) -> Any:
    try:
        st = os.stat(path)
    except OSError as exc:
        raise FirmwareError(f"'{path}': {exc.strerror}") from exc
    thepath = path
    if os.path.isdir(path):
        thepath = os.path.join(path, "BuildManifest.plist")
        if not os.path.exists(thepath):
            raise FirmwareError(f"'{thepath}': No such file or directory")
    del st
    try:
        with open(thepath, "rb") as handle:
            magic = handle.read(4)
    except OSError as exc:
        raise FirmwareError(f"Can't open '{thepath}': {exc.strerror}") from exc
    if len(magic) != 4:
        raise FirmwareError(f"Failed to read from '{path}'")

    if magic == _ZIP_MAGIC:
        try:
            data = extract_to_memory(thepath, "BuildManifest.plist")
        except IpswError as exc:
            raise FirmwareError(
                "Failed to extract BuildManifest.plist from IPSW!"
            ) from exc
    else:
        try:
            with open(thepath, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise FirmwareError("Failed to read BuildManifest.plist!") from exc
    try:
        return plistlib.loads(data)
    except (plistlib.InvalidFileException, ValueError) as exc:
        raise FirmwareError(f"Cannot parse plist data from '{thepath}'") from exc


def format_ipsw_info(path: str | os.PathLike[str]) -> str:
    """Describe the versions and build identities of an IPSW or its manifest."""
    manifest = _load_manifest(os.fspath(path))
    if not isinstance(manifest, Mapping):
        manifest = {}

    lines = [
        f"Product Version: {_text(manifest.get('ProductVersion'))}"
        f"   Build: {_text(manifest.get('ProductBuildVersion'))}"
    ]
    products = manifest.get("SupportedProductTypes")
    types = products if isinstance(products, list) else []
    lines.append("Supported Product Types:" + "".join(f" {_text(t)}" for t in types))
    lines.append("Build Identities:")

    groups: dict[str, dict[str, Any]] = {}
    identities = manifest.get("BuildIdentities")
    for identity in identities if isinstance(identities, list) else []:
        variant = _text(_dig(identity, "Info", "Variant"))
        group = groups.setdefault(
            variant,
            {"RestoreBehavior": _dig(identity, "Info", "RestoreBehavior"), "Entries": []},
        )
        group["Entries"].append(identity)

    for number, (variant, group) in enumerate(groups.items(), start=1):
        lines.append(
            f"  [{number}] Variant: {variant}"
            f"   Behavior: {_text(group['RestoreBehavior'])}"
        )
        for identity in group["Entries"]:
            chip_id = _c_uint(_dig(identity, "ApChipID")) & 0xFFFFFFFF
            board_id = _c_uint(_dig(identity, "ApBoardID")) & 0xFFFFFFFF
            model = _text(_dig(identity, "Info", "DeviceClass"))
            lines.append(
                f"    ChipID: {chip_id:04x}   BoardID: {board_id:02x}   Model: {model}"
            )
    return "\n".join(lines) + "\n"


def print_ipsw_info(path: str | os.PathLike[str]) -> None:
    """Print the summary produced by :func:`format_ipsw_info`."""
    print(format_ipsw_info(path), end="")