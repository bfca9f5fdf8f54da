"""Parsing, re-signing and serialising of IMG3 firmware containers."""

from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

IMG3_MAGIC = 0x496D6733  # "Img3"

_HEADER = struct.Struct("<5I")
_ELEMENT_HEADER = struct.Struct("<3I")


class Img3Error(ValueError):
    """Raised when IMG3 data cannot be parsed or personalised."""


class ElementType(enum.IntEnum):
    """Four-character tags of IMG3 elements, as stored little-endian."""

    DATA = 0x44415441
    TYPE = 0x54595045
    KBAG = 0x4B424147
    SHSH = 0x53485348
    CERT = 0x43455254
    CHIP = 0x43484950
    PROD = 0x50524F44
    SDOM = 0x53444F4D
    VERS = 0x56455253
    BORD = 0x424F5244
    SEPO = 0x5345504F
    ECID = 0x45434944
    UNKN = 0x53414C54


_PARSEABLE = frozenset(
    {
        ElementType.TYPE,
        ElementType.DATA,
        ElementType.VERS,
        ElementType.SEPO,
        ElementType.BORD,
        ElementType.CHIP,
        ElementType.KBAG,
        ElementType.ECID,
        ElementType.SHSH,
        ElementType.CERT,
        ElementType.UNKN,
    }
)


@dataclass(frozen=True)
class Img3Element:
    """One element of an IMG3 file; ``data`` includes its 12-byte header."""

    data: bytes

    @property
    def signature(self) -> int:
        return _ELEMENT_HEADER.unpack_from(self.data)[0]

    @property
    def full_size(self) -> int:
        return _ELEMENT_HEADER.unpack_from(self.data)[1]

    @property
    def data_size(self) -> int:
        return _ELEMENT_HEADER.unpack_from(self.data)[2]

    @property
    def type(self) -> ElementType | None:
        """The element's type, or None if the tag is not a known one."""
        try:
            return ElementType(self.signature)
        except ValueError:
            return None


def parse_element(data: bytes) -> Img3Element:
    """Parse the element that starts at the beginning of ``data``."""
    if len(data) < _ELEMENT_HEADER.size:
        raise Img3Error("truncated IMG3 element header")
    _, full_size, _ = _ELEMENT_HEADER.unpack_from(data)
    if full_size < _ELEMENT_HEADER.size:
        raise Img3Error(f"invalid IMG3 element size {full_size}")
    if full_size > len(data):
        raise Img3Error(
            f"IMG3 element size {full_size} exceeds the {len(data)} bytes available"
        )
    return Img3Element(bytes(data[:full_size]))


@dataclass
class Img3File:
    """A parsed IMG3 container."""

    signature: int
    full_size: int
    data_size: int
    shsh_offset: int
    image_type: int
    elements: list[Img3Element] = field(default_factory=list)

    def _last_index(self, kind: ElementType) -> int | None:
        found = None
        for index, element in enumerate(self.elements):
            if element.type is kind:
                found = index
        return found

    def _place(self, element: Img3Element, before: ElementType | None) -> None:
        current = self._last_index(element.type)
        if current is not None:
            self.elements[current] = element
            return
        anchor = self._last_index(before) if before is not None else None
        if anchor is not None:
            self.elements.insert(anchor, element)
        else:
            self.elements.append(element)

    def replace_signature(self, signature: bytes) -> None:
        """Replace the ECID, SHSH and CERT elements with those in ``signature``."""
        offset = 0
        parts = []
        for expected in (ElementType.ECID, ElementType.SHSH, ElementType.CERT):
            try:
                element = parse_element(signature[offset:])
            except Img3Error as exc:
                raise Img3Error(
                    f"Unable to find {expected.name} element in signature"
                ) from exc
            if element.type is not expected:
                raise Img3Error(f"Unable to find {expected.name} element in signature")
            parts.append(element)
            offset += element.full_size

        ecid, shsh, cert = parts
        self._place(ecid, ElementType.SHSH)
        self._place(shsh, ElementType.CERT)
        self._place(cert, None)

    def to_bytes(self) -> bytes:
        """Serialise the container, recomputing the header sizes."""
        body = bytearray()
        shsh_offset = 0
        for element in self.elements:
            if element.type is ElementType.SHSH:
                shsh_offset = len(body)
            body += element.data
        size = _HEADER.size + len(body)
        logger.info("reconstructed size: %d", size)
        header = _HEADER.pack(
            self.signature, size, len(body), shsh_offset, self.image_type
        )
        return header + bytes(body)


def parse_img3(data: bytes) -> Img3File:
    """Parse a complete IMG3 file."""
    if len(data) < _HEADER.size:
        raise Img3Error("Invalid IMG3 file")
    signature, full_size, data_size, shsh_offset, image_type = _HEADER.unpack_from(data)
    if signature != IMG3_MAGIC:
        raise Img3Error("Invalid IMG3 file")

    image = Img3File(signature, full_size, data_size, shsh_offset, image_type)
    view = memoryview(data)
    offset = _HEADER.size
    while offset < len(data):
        if len(data) - offset < _ELEMENT_HEADER.size:
            raise Img3Error("truncated IMG3 element header")
        tag = _ELEMENT_HEADER.unpack_from(data, offset)[0]
        if tag not in _PARSEABLE:
            raise Img3Error(f"Unknown IMG3 element type {tag:08x}")
        element = parse_element(view[offset:])
        image.elements.append(element)
        logger.debug("Parsed %s element", element.type.name)
        offset += element.full_size
    return image


def stitch_img3_component(component_name: str, component_data: bytes, blob: bytes) -> bytes:
    """Personalise an IMG3 component with the ECID/SHSH/CERT signature ``blob``."""
    if not component_name or not component_data or not blob:
        raise Img3Error("component name, data and blob must not be empty")

    logger.info("Personalizing IMG3 component %s...", component_name)
    try:
        image = parse_img3(component_data)
    except Img3Error as exc:
        raise Img3Error(f"Unable to parse {component_name} IMG3 file: {exc}") from exc

    if len(blob) < _ELEMENT_HEADER.size:
        raise Img3Error(f"Invalid blob passed for {component_name} IMG3")
    embedded = _ELEMENT_HEADER.unpack_from(blob)[1]
    if embedded != len(blob):
        raise Img3Error(
            f"Invalid blob passed for {component_name} IMG3: The size {embedded} "
            f"embedded in the blob does not match the passed size of {len(blob)}"
        )

    try:
        image.replace_signature(blob)
    except Img3Error as exc:
        raise Img3Error(f"Unable to replace {component_name} IMG3 signature: {exc}") from exc
    return image.to_bytes()