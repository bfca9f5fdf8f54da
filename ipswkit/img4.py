"""Building of IMG4 containers and local IM4M manifests."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

_BOOLEAN = 0x01
_INTEGER = 0x02
_OCTET_STRING = 0x04
_IA5_STRING = 0x16
_SEQUENCE = 0x30
_SET = 0x31
_CONTEXT_CONSTRUCTED = 0xA0
_PRIVATE_CONSTRUCTED = 0xFF

_UINT64_MASK = 0xFFFFFFFFFFFFFFFF

IMG4_MAGIC = b"IMG4"

_COMPONENT_TAGS = {
    "ACIBT": "acib",
    "ACIBTLPEM": "lpbt",
    "ACIWIFI": "aciw",
    "Alamo": "almo",
    "ANE": "anef",
    "ANS": "ansf",
    "AOP": "aopf",
    "Ap,AudioAccessibilityBootChime": "auac",
    "Ap,AudioBootChime": "aubt",
    "Ap,AudioPowerAttachChime": "aupr",
    "Ap,CIO": "ciof",
    "Ap,HapticAssets": "hpas",
    "Ap,LocalBoot": "lobo",
    "Ap,LocalPolicy": "lpol",
    "Ap,NextStageIM4MHash": "nsih",
    "Ap,RecoveryOSPolicyNonceHash": "ronh",
    "Ap,RestoreCIO": "rcio",
    "Ap,RestoreTMU": "rtmu",
    "Ap,Scorpius": "scpf",
    "Ap,SystemVolumeCanonicalMetadata": "msys",
    "Ap,TMU": "tmuf",
    "Ap,VolumeUUID": "vuid",
    "AppleLogo": "logo",
    "AudioCodecFirmware": "acfw",
    "AVE": "avef",
    "BatteryCharging": "glyC",
    "BatteryCharging0": "chg0",
    "BatteryCharging1": "chg1",
    "BatteryFull": "batF",
    "BatteryLow0": "bat0",
    "BatteryLow1": "bat1",
    "BatteryPlugin": "glyP",
    "CFELoader": "cfel",
    "Dali": "dali",
    "DCP": "dcpf",
    "DeviceTree": "dtre",
    "Diags": "diag",
    "EngineeringTrustCache": "dtrs",
    "ExtDCP": "edcp",
    "ftap": "ftap",
    "ftsp": "ftsp",
    "GFX": "gfxf",
    "Hamm": "hamf",
    "Homer": "homr",
    "iBEC": "ibec",
    "iBoot": "ibot",
    "iBootData": "ibdt",
    "iBootTest": "itst",
    "iBSS": "ibss",
    "InputDevice": "ipdf",
    "ISP": "ispf",
    "KernelCache": "krnl",
    "LeapHaptics": "lphp",
    "Liquid": "liqd",
    "LLB": "illb",
    "LoadableTrustCache": "ltrs",
    "LowPowerWallet0": "lpw0",
    "LowPowerWallet1": "lpw1",
    "LowPowerWallet2": "lpw2",
    "MacEFI": "mefi",
    "MtpFirmware": "mtpf",
    "Multitouch": "mtfw",
    "NeedService": "nsrv",
    "OS": "OS\x00\x00",
    "OSRamdisk": "osrd",
    "PersonalizedDMG": "pdmg",
    "PEHammer": "hmmr",
    "PERTOS": "pert",
    "PHLEET": "phlt",
    "PMP": "pmpf",
    "RBM": "rmbt",
    "Rap,SoftwareBinaryDsp1": "sbd1",
    "Rap,RTKitOS": "rkos",
    "Rap,RestoreRTKitOS": "rrko",
    "RecoveryMode": "recm",
    "RestoreANS": "rans",
    "RestoreDCP": "rdcp",
    "RestoreDeviceTree": "rdtr",
    "RestoreExtDCP": "recp",
    "RestoreKernelCache": "rkrn",
    "RestoreLogo": "rlgo",
    "RestoreRamDisk": "rdsk",
    "RestoreSEP": "rsep",
    "RestoreTrustCache": "rtsc",
    "rfta": "rfta",
    "rfts": "rfts",
    "RTP": "rtpf",
    "SCE": "scef",
    "SCE1Firmware": "sc1f",
    "SEP": "sepi",
    "SIO": "siof",
    "StaticTrustCache": "trst",
    "SystemLocker": "lckr",
    "SystemVolume": "isys",
    "WCHFirmwareUpdater": "wchf",
}

# Payload tags rewritten when a component is stitched under a restore name.
_RESTORE_PAYLOAD_TAGS = {
    "RestoreKernelCache": b"rkrn",
    "RestoreDeviceTree": b"rdtr",
    "RestoreSEP": b"rsep",
    "RestoreLogo": b"rlgo",
    "RestoreTrustCache": b"rtsc",
    "RestoreDCP": b"rdcp",
    "Ap,RestoreTMU": b"rtmu",
    "Ap,RestoreCIO": b"rcio",
    "Ap,DCP2": b"dcp2",
}

_TBM_TAGS = {"sepi": "tbms", "rsep": "tbmr"}


class Img4Error(ValueError):
    """Raised when an IMG4 container or manifest cannot be built."""


def encode_length(size: int) -> bytes:
    """Encode ``size`` as a DER length field of at most five bytes."""
    if size < 0 or size > 0xFFFFFFFF:
        raise Img4Error(f"length {size} cannot be encoded")
    if size >= 0x1000000:
        return bytes([0x84]) + size.to_bytes(4, "big")
    if size >= 0x10000:
        return bytes([0x83]) + size.to_bytes(3, "big")
    if size >= 0x100:
        return bytes([0x82]) + size.to_bytes(2, "big")
    if size >= 0x80:
        return bytes([0x81, size])
    return bytes([size])


def element_header(tag: int, size: int) -> bytes:
    """Return the tag and length bytes of an element.

    An element with tag 0 or an empty body gets no header at all.
    """
    if not tag or size == 0:
        return b""
    if not 0 < tag <= 0xFF:
        raise Img4Error(f"invalid element tag {tag}")
    return bytes([tag]) + encode_length(size)


def component_tag(component_name: str) -> str | None:
    """Return the four-character IMG4 tag of a build manifest component."""
    return _COMPONENT_TAGS.get(component_name)


def _int_size(value: int) -> int:
    size = 1
    value >>= 7
    while value:
        size += 1
        value >>= 7
    return size


def _integer(value: int) -> bytes:
    value &= _UINT64_MASK
    size = _int_size(value)
    body = (value & ((1 << (8 * size)) - 1)).to_bytes(size, "big")
    return element_header(_INTEGER, size) + body


def _boolean(flag: bool) -> bytes:
    return element_header(_BOOLEAN, 1) + (b"\xff" if flag else b"\x00")


def _octets(data: bytes) -> bytes:
    return element_header(_OCTET_STRING, len(data)) + data


def _ia5(text: bytes) -> bytes:
    return element_header(_IA5_STRING, len(text)) + text


def _set(content: bytes) -> bytes:
    return element_header(_SET, len(content)) + content


def _private_tag(number: int) -> bytes:
    groups = []
    while number > 0:
        groups.append(number & 0x7F)
        number >>= 7
    groups.reverse()
    encoded = bytes(g | 0x80 for g in groups[:-1]) + bytes(groups[-1:])
    return bytes([_PRIVATE_CONSTRUCTED]) + encoded


def _tag_parts(tag: str) -> tuple[int, bytes]:
    raw = tag.encode("latin-1")
    number = int.from_bytes(raw[:4].ljust(4, b"\x00"), "big")
    name = raw.split(b"\x00", 1)[0]
    return number, name


def _key_value(tag: str, payload: bytes, trailing: int = 0) -> bytes:
    """Encode a private-tagged ``SEQUENCE { IA5 tag, payload }`` entry.

    ``trailing`` counts bytes of the payload that the caller appends later.
    """
    number, name = _tag_parts(tag)
    inner = _ia5(name) + payload
    outer = element_header(_SEQUENCE, len(inner) + trailing)
    length = encode_length(len(outer) + len(inner) + trailing)
    return _private_tag(number) + length + outer + inner


def _as_bool(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def _as_uint(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value & _UINT64_MASK
    return 0


def _as_data(value: Any) -> bytes:
    return bytes(value) if isinstance(value, (bytes, bytearray)) else b""


def _component(tag: str, comp: Mapping[str, Any]) -> bytes:
    props = bytearray()

    digest = _as_data(comp.get("Digest"))
    if digest:
        props += _key_value("DGST", _octets(digest))

    for key, name in (("Trusted", "EKEY"), ("EPRO", "EPRO"), ("ESEC", "ESEC")):
        if comp.get(key) is not None:
            props += _key_value(name, _boolean(_as_bool(comp[key])))

    if comp.get("TBMDigests") is not None:
        tag_name = _tag_parts(tag)[1].decode("latin-1")
        tbm_tag = _TBM_TAGS.get(tag_name)
        if tbm_tag is None:
            logger.error("Unexpected TBMDigests for comp '%s'", tag_name)
        else:
            props += _key_value(tbm_tag, _octets(_as_data(comp["TBMDigests"])))

    return _key_value(tag, _set(bytes(props)))


def _find_element(data: bytes, index: int, kind: int) -> int | None:
    """Return the offset of the body of the ``index``-th element of a sequence."""
    if len(data) < 2 or data[0] != _SEQUENCE:
        return None
    offset = 2
    if 0x81 <= data[1] <= 0x84:
        offset += data[1] - 0x80
    el_type = 0
    for position in range(index + 1):
        if offset + 2 > len(data):
            return None
        el_type, el_size = data[offset], data[offset + 1]
        offset += 2
        if position == index:
            break
        offset += el_size
    return offset if el_type == kind else None


def stitch_img4_component(component_name: str, component_data: bytes, blob: bytes) -> bytes:
    """Wrap an IM4P payload and an ApImg4Ticket ``blob`` into an IMG4 file."""
    if not component_name or not component_data or not blob:
        raise Img4Error("component name, data and blob must not be empty")

    logger.info("Personalizing IMG4 component %s...", component_name)
    payload = bytearray(component_data)
    offset = _find_element(payload, 1, _IA5_STRING)
    if offset is not None:
        logger.debug("Tag found")
        new_tag = _RESTORE_PAYLOAD_TAGS.get(component_name)
        if new_tag is not None and offset + 4 <= len(payload):
            payload[offset:offset + 4] = new_tag

    content = (
        element_header(_IA5_STRING, len(IMG4_MAGIC))
        + IMG4_MAGIC
        + bytes(payload)
        + element_header(_CONTEXT_CONSTRUCTED, len(blob))
        + bytes(blob)
    )
    return element_header(_SEQUENCE, len(content)) + content


def _payload_type(build_identity: Mapping[str, Any] | None, key: str) -> str | None:
    if not build_identity:
        return None
    manifest = build_identity.get("Manifest")
    if not isinstance(manifest, Mapping):
        return None
    entry = manifest.get(key)
    if not isinstance(entry, Mapping):
        return None
    info = entry.get("Info")
    if not isinstance(info, Mapping):
        return None
    value = info.get("Img4PayloadType")
    return value if isinstance(value, str) else None


def create_local_manifest(
    request: Mapping[str, Any] | None,
    build_identity: Mapping[str, Any] | None,
) -> bytes:
    """Build a locally signed-style IM4M manifest from a TSS request."""
    if request is None:
        raise Img4Error("a TSS request is required")

    properties = b"".join(
        (
            _key_value("BORD", _integer(_as_uint(request.get("ApBoardID")))),
            _key_value("CEPO", _integer(0)),
            _key_value("CHIP", _integer(_as_uint(request.get("ApChipID")))),
            _key_value("CPRO", _boolean(_as_bool(request.get("ApProductionMode")))),
            _key_value("CSEC", _boolean(False)),
            _key_value("SDOM", _integer(_as_uint(request.get("ApSecurityDomain")))),
        )
    )
    body = bytearray(_key_value("MANP", _set(properties)))

    for key, value in request.items():
        if not isinstance(value, Mapping):
            continue
        tag = _payload_type(build_identity, key) or component_tag(key)
        if tag is None:
            raise Img4Error(f"Unhandled component '{key}' - can't create manifest")
        logger.debug("found component %s (%s)", tag, key)
        body += _component(tag, value)

    length = len(body)
    manb = _key_value("MANB", element_header(_SET, length), trailing=length)
    inner_set = element_header(_SET, length + len(manb))
    header_values = _ia5(b"IM4M") + _integer(0)
    sequence = element_header(
        _SEQUENCE, len(inner_set) + length + len(manb) + len(header_values)
    )
    return sequence + header_values + inner_set + manb + bytes(body)