# ipswkit

A library for firmware bundles (IPSW files) and the signed image formats
they contain. It uses only the standard library.

- **`ipswkit.ipsw`** opens an IPSW. The IPSW can be a zip archive or a
  directory that holds the extracted files. The module checks whether
  members exist, gives their sizes, reads them into memory and extracts
  them to disk. A long extraction can be cancelled.
- **`ipswkit.img3`** parses IMG3 containers. It replaces their signature
  elements (ECID, SHSH, CERT) with those taken from a blob.
- **`ipswkit.img4`** wraps an IMG4 payload and its ticket into a complete
  IMG4 file. It also maps component names to their four-character tags and
  builds a local IM4M manifest from a signing request.
- **`ipswkit.firmware`** selects the signed firmwares for a product and
  finds the newest firmware in version data. It downloads firmware and
  checks the SHA-1, and it summarises the build manifest of an IPSW.

## Reading an IPSW

```python
from ipswkit.ipsw import IpswArchive, IpswError

with IpswArchive("iPhone_Restore.ipsw") as archive:
    if archive.file_exists("BuildManifest.plist"):
        data = archive.read("BuildManifest.plist")
        print(archive.file_size("BuildManifest.plist"), len(data))
    archive.extract_to_file(
        "Firmware/all_flash/DeviceTree.img3",
        "DeviceTree.img3",
        lambda percent: print(f"{percent:.1f}%"),
    )
```

The third argument of `extract_to_file` is an optional callback. It
receives the progress as a percentage. Pass `None` for no progress.

For single operations the module also has helpers that take the path of
the IPSW: `is_directory`, `file_exists`, `file_size`, `extract_to_memory`,
`extract_to_file`, `extract_build_manifest` and `extract_restore_plist`.

- `extract_build_manifest` returns a pair `(manifest, tss_required)`. It
  prefers `BuildManifesto.plist`, which needs no signing. If that file is
  absent it reads `BuildManifest.plist`, which does.
- `extract_restore_plist` returns the parsed `Restore.plist`.

To stop an extraction that is running, call `cancel()` from another thread
or from a signal handler. The extraction then raises `ExtractionCancelled`,
a subclass of `IpswError`. Other failures raise `IpswError`.

## Personalizing components

```python
from ipswkit.img3 import parse_img3, stitch_img3_component
from ipswkit.img4 import stitch_img4_component, component_tag

personalized = stitch_img3_component("iBSS", img3_bytes, shsh_blob)
stitched = stitch_img4_component("RestoreKernelCache", im4p_bytes, ap_img4_ticket)

component_tag("KernelCache")   # "krnl"
component_tag("Unknown")       # None
```

IMG3 signature blob:

- It must hold an ECID, an SHSH and a CERT element, in that order.
- Its first element header must give the total length of the blob.

`parse_img3` returns an `Img3File` with a list of `Img3Element` objects.
Two methods work on it:

- `replace_signature` swaps in the elements of a blob.
- `to_bytes` serialises the file again and recomputes the header sizes.

`stitch_img4_component` retags the payload when a restore variant needs a
different tag. For example, `RestoreKernelCache` becomes `rkrn`.

`create_local_manifest(request, build_identity)` takes a signing request as
a dictionary in plist form. It returns the DER bytes of an IM4M manifest.
If the build identity's manifest gives an `Img4PayloadType` for a
component, that type is used as the component's tag. Otherwise the tag
comes from `component_tag`.

The low-level encoders `encode_length` and `element_header` are public as
well.

Failures raise `Img3Error` or `Img4Error`. Both are subclasses of
`ValueError`.

## Firmware metadata and downloads

```python
from ipswkit.firmware import (
    download_firmware,
    format_ipsw_info,
    get_signed_firmwares,
    parse_sha1,
)

print(format_ipsw_info("iPhone_Restore.ipsw"))
digest = parse_sha1("0123456789abcdef0123456789abcdef01234567")
signed = get_signed_firmwares("iPhone10,3")
path = download_firmware(signed[0]["url"], parse_sha1(signed[0]["sha1sum"]), "cache")
```

- `format_ipsw_info` and `print_ipsw_info` describe what the build
  manifest holds: the product version and build, the supported product
  types, and the build identities grouped by variant. They accept an IPSW
  zip, an extracted directory or a manifest file.
- `signed_firmwares(data, product)` filters a JSON document that has
  already been parsed. `get_signed_firmwares(product, fetch)` downloads
  that document first.
- `latest_firmware(version_data, product)` returns `(url, sha1)` from
  version data. `download_latest_firmware` then fetches that firmware.
- `download_firmware(url, sha1, todir, fetch)`:
  - It reuses an existing file when the file's SHA-1 matches.
  - It downloads otherwise, under a lock file, and checks the result with
    `sha1_matches`.
  - If the checksum does not match, it removes the file.
  - A missing or all-zero `sha1` turns off verification.
  - URLs that start with `protected:` are refused.

By default, downloads go through `urllib.request`. You can pass a `fetch`
callable to replace the default:

- For `get_signed_firmwares`, it takes a URL and returns the response body.
- For `download_firmware` and `download_latest_firmware`, it takes a URL
  and a destination path, and writes the file there.

Failures raise `FirmwareError`.

## What it does not do

ipswkit works with files and data only. It does not:

- talk to devices;
- request signing tickets from a signing server;
- restore firmware onto hardware.

It has no command-line program. Use it as a library.