#!/usr/bin/env python3
"""Bring every installed DLC archive of a truck simulator to the same version.

The game refuses to load DLC archives whose manifest advertises a different
compatible version than the rest of the installation.  This tool picks a
well-known DLC archive as the reference, reads the version out of its
``*.manifest.sii`` entry and rewrites the manifest of every other
``dlc_*.scs`` archive in the folder so it advertises the same version.

```
python dlc_repack.py [game_folder]
```

The manifest is patched in place.  The new payload is recompressed, its
catalog record is rewritten with the fresh CRC and sizes, and the payload is
written over the old one when it fits (or when it is the last payload of the
archive).  Otherwise it is appended at the end of the file and the record is
pointed there.  The space left behind by a relocated payload is not reclaimed.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import zlib
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Sequence, Tuple

import hashfs

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

DLC_PREFIX = "dlc_"
ARCHIVE_SUFFIX = ".scs"
MANIFEST_SUFFIX = ".manifest.sii"
# Probed in order when looking for the reference version.
KNOWN_DLC_NAMES = (
    "pcg",
    "rocket_league",
    "metallics",
    "phys_flags",
    "rims",
    "hs_schoch",
    "toys",
    "oversize",
)

ZLIB_BEST_COMPRESSION_HEADER = b"\x78\xda"
NAME_PATTERN = re.compile(rb"display_name:\s+[\"']([^\"']+)[\"']")
VERSION_PATTERN = re.compile(rb"(package|compatible)_version(s)?(\[\])?:\s+[\"']([^\"']+)[\"']")
UNKNOWN_DLC_NAME = "Unknown DLC"

ERROR_POLICIES = ("abort", "skip")
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


class RepackError(RuntimeError):
    """Raised when an archive cannot be read, patched or written back."""


class ManifestFormatError(RepackError):
    """Raised when an archive has no manifest or the manifest has no version."""


def find_version_in_manifest(manifest: bytes, pattern: re.Pattern[bytes] = VERSION_PATTERN) -> bytes:
    """Return the first quoted version token found in ``manifest``."""

    match = pattern.search(manifest)
    if match is None:
        raise ManifestFormatError("no version found in DLC manifest")
    # The quoted value is the pattern's last group.
    return match.group(match.re.groups)


def find_display_name_in_manifest(manifest: bytes, pattern: re.Pattern[bytes] = NAME_PATTERN) -> str:
    """Return the DLC display name, or a placeholder when it is missing."""

    match = pattern.search(manifest)
    if match is None:
        return UNKNOWN_DLC_NAME

    raw = match.group(1)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def read_manifest(
    handle: BinaryIO,
    entries: Sequence[Dict[str, object]],
    archive_path: Path,
    manifest_suffix: str = MANIFEST_SUFFIX,
) -> Tuple[Dict[str, object], bytes]:
    """Return the manifest entry of an open archive and its decompressed payload."""

    for entry in entries:
        if entry["is_directory"] or not str(entry["name"]).endswith(manifest_suffix):
            continue
        return entry, hashfs.open_entry(handle, entry).read()

    raise ManifestFormatError(f"unable to find a manifest inside {archive_path.name}")


def _load_manifest(
    archive_path: Path, manifest_suffix: str
) -> Tuple[List[Dict[str, object]], Dict[str, object], bytes]:
    """Open ``archive_path`` read-only and return its entries, manifest entry and manifest."""

    try:
        with archive_path.open("rb") as handle:
            _header, entries = hashfs.read_catalog(handle)
            entry, manifest = read_manifest(handle, entries, archive_path, manifest_suffix)
    except OSError as exc:
        raise RepackError(f"unable to read {archive_path}: {exc}") from exc
    except hashfs.HashFSError as exc:
        raise RepackError(f"unable to read {archive_path.name}: {exc}") from exc
    return entries, entry, manifest


def find_reference_version(
    folder: Path,
    dlc_names: Iterable[str] = KNOWN_DLC_NAMES,
    *,
    prefix: str = DLC_PREFIX,
    suffix: str = ARCHIVE_SUFFIX,
    manifest_suffix: str = MANIFEST_SUFFIX,
    version_pattern: re.Pattern[bytes] = VERSION_PATTERN,
) -> bytes | None:
    """Return the version of the first known DLC archive present in ``folder``.

    ``None`` means none of the known archives is installed, which is not an
    error: there is simply nothing to align the other archives with.
    """

    for dlc_name in dlc_names:
        archive_path = folder / f"{prefix}{dlc_name}{suffix}"
        if not archive_path.is_file():
            continue

        logger.debug("Using %s as the reference DLC", archive_path.name)
        _entries, _entry, manifest = _load_manifest(archive_path, manifest_suffix)
        try:
            return find_version_in_manifest(manifest, version_pattern)
        except ManifestFormatError as exc:
            raise ManifestFormatError(f"{archive_path.name}: {exc}") from exc

    logger.warning(
        "No DLC files have been found in %s. Are you sure this is a valid game installation?", folder
    )
    return None


def deflate_bytes(data: bytes) -> bytes:
    """Compress ``data`` the way the game expects compressed entries to look.

    The stream is raw DEFLATE at the best compression level behind the two
    byte zlib header announcing a best-compression stream; no Adler-32
    trailer is appended.
    """

    compressor = zlib.compressobj(zlib.Z_BEST_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
    return ZLIB_BEST_COMPRESSION_HEADER + compressor.compress(data) + compressor.flush()


def find_largest_offset(entries: Iterable[Dict[str, object]]) -> int:
    """Return the data offset of the last payload in the archive."""

    return max(int(entry["offset"]) for entry in entries)


def find_catalog_range(entries: Iterable[Dict[str, object]]) -> Tuple[int, int]:
    """Return the ``(start, end)`` byte range occupied by the catalog records."""

    offsets = [int(entry["catalog_offset"]) for entry in entries]
    return min(offsets), max(offsets) + hashfs.CATALOG_RECORD.size


def choose_data_offset(
    entry: Dict[str, object],
    compressed_size: int,
    largest_offset: int,
    file_size: int,
    catalog_range: Tuple[int, int] | None = None,
) -> int:
    """Return where the recompressed payload of ``entry`` has to be written.

    A payload can only grow in place when nothing follows it, neither another
    payload nor the catalog itself.
    """

    offset = int(entry["offset"])
    if compressed_size <= int(entry["zsize"]):
        return offset
    if offset != largest_offset:
        return file_size
    if catalog_range is not None:
        catalog_start, catalog_end = catalog_range
        if offset < catalog_end and catalog_start < offset + compressed_size:
            return file_size
    return offset


def _write_exact(handle: BinaryIO, offset: int, data: bytes, what: str) -> None:
    handle.seek(offset)
    written = handle.write(data)
    if written != len(data):
        raise RepackError(f"did not write enough bytes for {what}: expected {len(data)}, wrote {written}")


def patch_archive(
    archive_path: Path,
    target_version: bytes,
    *,
    manifest_suffix: str = MANIFEST_SUFFIX,
    version_pattern: re.Pattern[bytes] = VERSION_PATTERN,
    name_pattern: re.Pattern[bytes] = NAME_PATTERN,
) -> Tuple[str, Dict[str, object]]:
    """Rewrite the manifest version of ``archive_path`` to ``target_version``.

    Returns ``(status, details)`` where *status* is ``"unchanged"`` when the
    archive already advertises the target version and ``"patched"`` once the
    new payload and catalog record have been written back.
    """

    entries, entry, manifest = _load_manifest(archive_path, manifest_suffix)
    try:
        version = find_version_in_manifest(manifest, version_pattern)
    except ManifestFormatError as exc:
        raise ManifestFormatError(f"{archive_path.name}: {exc}") from exc

    details: Dict[str, object] = {
        "archive": archive_path.name,
        "display_name": find_display_name_in_manifest(manifest, name_pattern),
        "old_version": version,
        "new_version": target_version,
        "old_offset": entry["offset"],
    }
    if version == target_version:
        logger.debug("%s is already at version %s", archive_path.name, version.decode("latin-1"))
        return "unchanged", details

    logger.info(
        "Updating %s (%s) from version %s to version %s...",
        details["display_name"],
        archive_path.name,
        version.decode("latin-1"),
        target_version.decode("latin-1"),
    )

    manifest = manifest.replace(version, target_version)
    compressed = deflate_bytes(manifest)
    largest_offset = find_largest_offset(entries)
    catalog_range = find_catalog_range(entries)

    try:
        with archive_path.open("r+b") as handle:
            handle.seek(0, os.SEEK_END)
            file_size = handle.tell()
            new_offset = choose_data_offset(entry, len(compressed), largest_offset, file_size, catalog_range)
            if new_offset != entry["offset"]:
                logger.debug(
                    "Manifest of %s grew from %d to %d bytes, moving it to the end of the file",
                    archive_path.name,
                    entry["zsize"],
                    len(compressed),
                )

            record = dict(entry["record"])
            record.update(
                offset=new_offset,
                crc=zlib.crc32(manifest) & 0xFFFFFFFF,
                size=len(manifest),
                zsize=len(compressed),
                flags=hashfs.ENTRY_TYPE_COMPRESSED_FILE_COPY,
            )
            header = hashfs.encode_catalog_record(record)

            _write_exact(handle, new_offset, compressed, f"new manifest of {archive_path.name}")
            _write_exact(handle, int(entry["catalog_offset"]), header, f"manifest record of {archive_path.name}")
    except OSError as exc:
        raise RepackError(f"unable to patch {archive_path}: {exc}") from exc
    except hashfs.HashFSError as exc:
        raise RepackError(f"unable to patch {archive_path.name}: {exc}") from exc

    details.update(
        new_offset=new_offset,
        relocated=new_offset != entry["offset"],
        crc=record["crc"],
        size=record["size"],
        zsize=record["zsize"],
    )
    return "patched", details


def list_dlc_archives(folder: Path, prefix: str = DLC_PREFIX, suffix: str = ARCHIVE_SUFFIX) -> List[Path]:
    """Return the DLC archives stored directly inside ``folder``."""

    try:
        with os.scandir(folder) as iterator:
            return [
                Path(item.path)
                for item in iterator
                if item.is_file() and item.name.startswith(prefix) and item.name.endswith(suffix)
            ]
    except OSError as exc:
        raise RepackError(f"could not enumerate files in {folder}: {exc}") from exc


def repack_folder(
    folder: Path,
    *,
    on_error: str = "abort",
    dlc_names: Iterable[str] = KNOWN_DLC_NAMES,
    prefix: str = DLC_PREFIX,
    suffix: str = ARCHIVE_SUFFIX,
    manifest_suffix: str = MANIFEST_SUFFIX,
    version_pattern: re.Pattern[bytes] = VERSION_PATTERN,
    name_pattern: re.Pattern[bytes] = NAME_PATTERN,
) -> Dict[str, object]:
    """Align every DLC archive in ``folder`` with the reference version.

    With ``on_error="abort"`` the first failing archive stops the run.  With
    ``"skip"`` the failure is logged, the archive is listed under
    ``"failed"`` and the remaining archives are still processed.
    """

    if on_error not in ERROR_POLICIES:
        raise ValueError(f"unknown error policy {on_error!r}")
    if not folder.is_dir():
        raise RepackError(f"folder does not exist: {folder}")

    logger.info("Repacking DLC files in %s...", folder)
    summary: Dict[str, object] = {"version": None, "patched": [], "unchanged": [], "failed": []}

    version = find_reference_version(
        folder,
        dlc_names,
        prefix=prefix,
        suffix=suffix,
        manifest_suffix=manifest_suffix,
        version_pattern=version_pattern,
    )
    if version is None:
        return summary
    summary["version"] = version

    for archive_path in list_dlc_archives(folder, prefix, suffix):
        try:
            status, _details = patch_archive(
                archive_path,
                version,
                manifest_suffix=manifest_suffix,
                version_pattern=version_pattern,
                name_pattern=name_pattern,
            )
        except RepackError as exc:
            if on_error == "abort":
                raise
            logger.warning("Skipping %s: %s", archive_path.name, exc)
            summary["failed"].append(archive_path)
            continue
        summary[status].append(archive_path)

    logger.info("Updated all DLC files to version %s.", version.decode("latin-1"))
    return summary


def configure_logging(level: str = "info") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS[level])


def is_input_piped() -> bool:
    """Return True when stdin is not an interactive terminal."""

    stdin = sys.stdin
    if stdin is None:
        return True
    try:
        return not stdin.isatty()
    except (AttributeError, ValueError):
        return True


def wait_for_keyboard() -> None:
    """Keep a double-clicked console window open until the user reacts."""

    if is_input_piped():
        return
    logger.info("Press any key to close this window...")
    try:
        input()
    except EOFError:
        pass


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ets2-dlc-repacker",
        description="Update the manifest version of every DLC archive in a game folder",
    )
    parser.add_argument(
        "folder",
        nargs="?",
        type=Path,
        default=None,
        help="game installation folder (defaults to the current working directory)",
    )
    parser.add_argument(
        "--log-level",
        choices=sorted(LOG_LEVELS),
        default="info",
        help="log level (default: info)",
    )
    parser.add_argument(
        "--on-error",
        choices=ERROR_POLICIES,
        default="abort",
        help="stop at the first broken archive (abort) or carry on with the others (skip)",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="do not wait for a key press before exiting",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s v{__version__}",
    )
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    status = 0
    try:
        folder = args.folder if args.folder is not None else Path.cwd()
        repack_folder(folder, on_error=args.on_error)
    except (RepackError, hashfs.HashFSError, OSError) as exc:
        logger.error("%s", exc)
        status = 1

    if not args.no_wait:
        wait_for_keyboard()
    return status


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
