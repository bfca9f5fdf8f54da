import pytest

from ipswkit.img4 import (
    Img4Error,
    component_tag,
    create_local_manifest,
    element_header,
    encode_length,
    stitch_img4_component,
)


def _read_length(buf, pos):
    first = buf[pos]
    pos += 1
    if first & 0x80:
        count = first & 0x7F
        return int.from_bytes(buf[pos:pos + count], "big"), pos + count
    return first, pos


def _walk(buf, start, end, leaves, private_tags):
    """Check that every constructed element is exactly filled by its children."""
    pos = start
    while pos < end:
        tag = buf[pos]
        pos += 1
        private_number = None
        if tag & 0x1F == 0x1F:
            private_number = 0
            while True:
                byte = buf[pos]
                pos += 1
                private_number = (private_number << 7) | (byte & 0x7F)
                if not byte & 0x80:
                    break
        length, pos = _read_length(buf, pos)
        assert pos + length <= end
        if private_number is not None:
            private_tags.append(private_number)
        if tag & 0x20:
            _walk(buf, pos, pos + length, leaves, private_tags)
        else:
            leaves.append((tag, bytes(buf[pos:pos + length])))
        pos += length
    assert pos == end


def _parse(buf):
    leaves, private_tags = [], []
    _walk(buf, 0, len(buf), leaves, private_tags)
    return leaves, private_tags


def _after(leaves, name):
    names = [content for tag, content in leaves]
    return leaves[names.index(name) + 1]


def _im4p(tag=b"krnl"):
    content = b"\x16\x04IM4P" + b"\x16\x04" + tag + b"\x16\x01x" + b"\x04\x03abc"
    return bytes([0x30, len(content)]) + content


@pytest.mark.parametrize("size", [0, 1, 0x7F, 0x80, 0xFF, 0x100, 0xFFFF, 0x10000, 0xFFFFFF, 0x1000000, 0xFFFFFFFF])
def test_encode_length_round_trip(size):
    encoded = encode_length(size)
    value, end = _read_length(encoded, 0)
    assert value == size
    assert end == len(encoded)


def test_encode_length_short_and_long_forms():
    assert encode_length(0x7F) == b"\x7f"
    assert encode_length(0x80) == b"\x81\x80"
    assert len(encode_length(0x1000000)) == 5


def test_encode_length_rejects_out_of_range():
    with pytest.raises(Img4Error):
        encode_length(-1)
    with pytest.raises(Img4Error):
        encode_length(1 << 32)


def test_element_header_prefixes_tag():
    assert element_header(0x30, 300) == b"\x30" + encode_length(300)


def test_element_header_empty_for_zero_size():
    assert element_header(0x31, 0) == b""


def test_component_tag_lookup():
    assert component_tag("KernelCache") == "krnl"
    assert component_tag("OS") == "OS\x00\x00"
    assert component_tag("NoSuchComponent") is None


def test_stitch_structure():
    payload = _im4p()
    blob = b"ticket-bytes"
    result = stitch_img4_component("KernelCache", payload, blob)
    value, pos = _read_length(result, 1)
    assert result[0] == 0x30
    assert pos + value == len(result)
    assert result[pos:pos + 6] == b"\x16\x04IMG4"
    assert result[pos + 6:pos + 6 + len(payload)] == payload
    assert result.endswith(element_header(0xA0, len(blob)) + blob)


def test_stitch_rewrites_restore_tag():
    payload = _im4p()
    result = stitch_img4_component("RestoreKernelCache", payload, b"blob")
    assert b"rkrn" in result
    assert b"krnl" not in result
    assert payload == _im4p()


def test_stitch_keeps_tag_for_other_components():
    result = stitch_img4_component("KernelCache", _im4p(), b"blob")
    assert b"krnl" in result


@pytest.mark.parametrize(
    "name,data,blob",
    [("", _im4p(), b"b"), ("iBSS", b"", b"b"), ("iBSS", _im4p(), b"")],
)
def test_stitch_rejects_empty_inputs(name, data, blob):
    with pytest.raises(Img4Error):
        stitch_img4_component(name, data, blob)


def _request(**components):
    request = {
        "ApBoardID": 4,
        "ApChipID": 0x8010,
        "ApProductionMode": True,
        "ApSecurityDomain": 1,
    }
    request.update(components)
    return request


def test_local_manifest_is_well_formed():
    digest = bytes(range(48))
    manifest = create_local_manifest(
        _request(KernelCache={"Digest": digest, "Trusted": True}), None
    )
    leaves, _ = _parse(manifest)
    names = [content for tag, content in leaves if tag == 0x16]
    assert names == [
        b"IM4M", b"MANB", b"MANP", b"BORD", b"CEPO", b"CHIP",
        b"CPRO", b"CSEC", b"SDOM", b"krnl", b"DGST", b"EKEY",
    ]
    assert _after(leaves, b"DGST") == (0x04, digest)
    assert _after(leaves, b"EKEY") == (0x01, b"\xff")


def test_local_manifest_property_values():
    manifest = create_local_manifest(_request(), None)
    leaves, _ = _parse(manifest)
    chip_tag, chip = _after(leaves, b"CHIP")
    assert chip_tag == 0x02
    assert int.from_bytes(chip, "big") == 0x8010
    assert int.from_bytes(_after(leaves, b"BORD")[1], "big") == 4
    assert _after(leaves, b"CPRO") == (0x01, b"\xff")
    assert _after(leaves, b"CSEC") == (0x01, b"\x00")
    assert int.from_bytes(_after(leaves, b"CEPO")[1], "big") == 0


def test_private_tags_match_names():
    manifest = create_local_manifest(
        _request(KernelCache={"Digest": b"\x01" * 4}, OS={"Digest": b"\x02" * 4}), None
    )
    leaves, private_tags = _parse(manifest)
    names = [content for tag, content in leaves if tag == 0x16][1:]
    expected = [int.from_bytes(name.ljust(4, b"\x00"), "big") for name in names]
    assert private_tags == expected
    assert b"OS" in names


def test_payload_type_from_build_identity():
    identity = {"Manifest": {"KernelCache": {"Info": {"Img4PayloadType": "abcd"}}}}
    manifest = create_local_manifest(_request(KernelCache={"Digest": b"\x01"}), identity)
    leaves, _ = _parse(manifest)
    names = [content for tag, content in leaves if tag == 0x16]
    assert b"abcd" in names
    assert b"krnl" not in names


def test_tbm_digests_for_sep():
    data = b"\x09" * 8
    manifest = create_local_manifest(_request(SEP={"TBMDigests": data}), None)
    leaves, _ = _parse(manifest)
    assert _after(leaves, b"tbms") == (0x04, data)


def test_tbm_digests_ignored_for_other_components():
    with_tbm = create_local_manifest(
        _request(KernelCache={"Digest": b"\x01", "TBMDigests": b"\x02"}), None
    )
    without = create_local_manifest(_request(KernelCache={"Digest": b"\x01"}), None)
    assert with_tbm == without


def test_non_dict_entries_are_skipped():
    plain = create_local_manifest(_request(), None)
    extra = create_local_manifest(_request(ApNonce=b"\x00" * 20, Name="x"), None)
    assert plain == extra


def test_unhandled_component_raises():
    with pytest.raises(Img4Error):
        create_local_manifest(_request(Mystery={"Digest": b"\x01"}), None)


def test_missing_request_raises():
    with pytest.raises(Img4Error):
        create_local_manifest(None, None)