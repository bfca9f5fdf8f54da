import struct

import pytest

from ipswkit.img3 import (
    IMG3_MAGIC,
    ElementType,
    Img3Error,
    parse_element,
    parse_img3,
    stitch_img3_component,
)


def element(kind, payload):
    return struct.pack("<3I", int(kind), 12 + len(payload), len(payload)) + payload


def img3(*elements, image_type=0x69626F74):
    body = b"".join(elements)
    header = struct.pack("<5I", IMG3_MAGIC, 20 + len(body), len(body), 0, image_type)
    return header + body


def types(image):
    return [e.type for e in image.elements]


def test_parse_element_reads_header_fields():
    raw = element(ElementType.DATA, b"abcd") + b"trailing"
    parsed = parse_element(raw)
    assert parsed.type is ElementType.DATA
    assert parsed.full_size == 16
    assert parsed.data_size == 4
    assert parsed.data == raw[:16]


def test_parse_element_rejects_oversized():
    raw = struct.pack("<3I", int(ElementType.DATA), 100, 88)
    with pytest.raises(Img3Error):
        parse_element(raw)


def test_element_tags_are_ascii_little_endian():
    shsh = parse_element(b"HSHS" + struct.pack("<2I", 12, 0))
    assert shsh.type is ElementType.SHSH
    assert shsh.full_size == 12
    cert = parse_element(b"TREC" + struct.pack("<2I", 16, 4) + b"cert")
    assert cert.type is ElementType.CERT
    assert cert.data_size == 4


def test_parse_img3_lists_elements_in_order():
    data = img3(
        element(ElementType.TYPE, b"tobi"),
        element(ElementType.DATA, b"\x00" * 8),
        element(ElementType.SHSH, b"s" * 4),
        element(ElementType.CERT, b"c" * 4),
    )
    image = parse_img3(data)
    assert types(image) == [
        ElementType.TYPE,
        ElementType.DATA,
        ElementType.SHSH,
        ElementType.CERT,
    ]
    assert image.image_type == 0x69626F74


def test_round_trip_preserves_bytes_and_header():
    data = img3(
        element(ElementType.TYPE, b"tobi"),
        element(ElementType.DATA, b"payload!"),
    )
    out = parse_img3(data).to_bytes()
    assert out == data
    assert struct.unpack_from("<I", out, 4)[0] == len(out)


def test_invalid_magic():
    data = bytearray(img3(element(ElementType.DATA, b"x")))
    data[0:4] = b"3gmi"
    with pytest.raises(Img3Error):
        parse_img3(bytes(data))


def test_unhandled_element_type_rejected():
    data = img3(element(ElementType.PROD, b"\x01\x00\x00\x00"))
    with pytest.raises(Img3Error):
        parse_img3(data)


def signature(ecid=b"E" * 8, shsh=b"S" * 16, cert=b"C" * 12):
    return (
        element(ElementType.ECID, ecid)
        + element(ElementType.SHSH, shsh)
        + element(ElementType.CERT, cert)
    )


def test_replace_signature_inserts_ecid_before_shsh():
    image = parse_img3(
        img3(
            element(ElementType.TYPE, b"tobi"),
            element(ElementType.DATA, b"dddd"),
            element(ElementType.SHSH, b"old!"),
            element(ElementType.CERT, b"oldc"),
        )
    )
    sig = signature()
    image.replace_signature(sig)
    assert types(image) == [
        ElementType.TYPE,
        ElementType.DATA,
        ElementType.ECID,
        ElementType.SHSH,
        ElementType.CERT,
    ]
    assert b"".join(e.data for e in image.elements[2:]) == sig


def test_replace_signature_appends_when_absent():
    image = parse_img3(img3(element(ElementType.DATA, b"dddd")))
    sig = signature()
    image.replace_signature(sig)
    assert types(image) == [
        ElementType.DATA,
        ElementType.ECID,
        ElementType.SHSH,
        ElementType.CERT,
    ]
    assert b"".join(e.data for e in image.elements[1:]) == sig


def test_replace_signature_replaces_existing_in_place():
    image = parse_img3(
        img3(
            element(ElementType.ECID, b"oldecid!"),
            element(ElementType.SHSH, b"olds"),
            element(ElementType.DATA, b"dddd"),
            element(ElementType.CERT, b"oldc"),
        )
    )
    sig = signature()
    image.replace_signature(sig)
    assert types(image) == [
        ElementType.ECID,
        ElementType.SHSH,
        ElementType.DATA,
        ElementType.CERT,
    ]
    assert image.elements[0].data == element(ElementType.ECID, b"E" * 8)
    assert image.elements[3].data == element(ElementType.CERT, b"C" * 12)


def test_replace_signature_requires_cert():
    image = parse_img3(img3(element(ElementType.DATA, b"dddd")))
    bad = element(ElementType.ECID, b"E" * 8) + element(ElementType.SHSH, b"S" * 4)
    with pytest.raises(Img3Error):
        image.replace_signature(bad)


def test_replace_signature_requires_ecid_first():
    image = parse_img3(img3(element(ElementType.DATA, b"dddd")))
    bad = element(ElementType.SHSH, b"S" * 4) + element(ElementType.ECID, b"E" * 8)
    with pytest.raises(Img3Error):
        image.replace_signature(bad)


def test_stitch_rejects_blob_size_mismatch():
    component = img3(element(ElementType.DATA, b"dddd"))
    with pytest.raises(Img3Error):
        stitch_img3_component("iBoot", component, signature() + b"\x00" * 4)


def test_stitch_rejects_empty_input():
    with pytest.raises(Img3Error):
        stitch_img3_component("iBoot", b"", signature())


def test_stitch_rejects_non_img3_component():
    with pytest.raises(Img3Error):
        stitch_img3_component("iBoot", b"\x00" * 32, signature())