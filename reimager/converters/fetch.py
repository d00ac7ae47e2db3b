from __future__ import annotations

import bz2
import gzip
import logging
import lzma
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import requests
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TimeRemainingColumn, TransferSpeedColumn

from ..core.context import SourceImage
from ..core.exceptions import ChecksumMismatch, DownloadError, UnsupportedFormat
from ..core.utils import U
from .checksum import ChecksumVerifier
from .qemu_converter import ImageConverter

CHUNK = 1024 * 1024

# formats qemu-img can turn into a raw disk image
CONVERTIBLE = {"qcow2", "vpc", "vmdk", "vhdx", "vdi"}

_COMPRESSION_MAGIC = (
    (b"\x1f\x8b", "gzip"),
    (b"\xfd7zXZ\x00", "xz"),
    (b"BZh", "bzip2"),
)
_DISK_MAGIC = (
    (b"QFI\xfb", "qcow2"),
    (b"KDMV", "vmdk"),
    (b"vhdxfile", "vhdx"),
    (b"conectix", "vpc"),
)
_OPENERS = {"gzip": gzip.open, "xz": lzma.open, "bzip2": bz2.open}


def sniff(path: Path) -> Optional[str]:
    with open(path, "rb") as f:
        head = f.read(512)
    for magic, name in _COMPRESSION_MAGIC + _DISK_MAGIC:
        if head.startswith(magic):
            return name
    return None


class ImageAcquirer:
    """
    Downloads (with resume), verifies and normalizes an OS image into a raw
    disk image under the download directory.
    """

    def __init__(
        self,
        logger: logging.Logger,
        download_dir: Path,
        converter: ImageConverter,
        verifier: Optional[ChecksumVerifier] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 60,
        show_progress: bool = True,
    ):
        self.logger = logger
        self.download_dir = download_dir
        self.converter = converter
        self.verifier = verifier or ChecksumVerifier(logger, show_progress=show_progress)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.show_progress = show_progress

    # --- download -----------------------------------------------------------------

    @staticmethod
    def local_path(url: str) -> Optional[Path]:
        u = urlparse(url)
        if u.scheme == "file":
            return Path(unquote(u.path))
        if not u.scheme:
            return Path(url).expanduser()
        if u.scheme not in ("http", "https"):
            raise DownloadError(msg=f"Unsupported URL scheme {u.scheme!r}: {url}")
        return None

    def destination(self, url: str) -> Path:
        name = os.path.basename(unquote(urlparse(url).path)) or "image.img"
        return self.download_dir / name

    def download(self, url: str, dest: Path) -> Path:
        U.ensure_dir(dest.parent)
        have = dest.stat().st_size if dest.exists() else 0
        headers = {"Range": f"bytes={have}-"} if have else {}
        if have:
            self.logger.info(f"Resuming download of {dest.name} at {U.human_bytes(have)}")
        else:
            self.logger.info(f"Downloading {url}")
        try:
            with self.session.get(url, headers=headers, stream=True, timeout=self.timeout) as r:
                if r.status_code == 416 and have:
                    self.logger.info(f"{dest.name} is already complete ({U.human_bytes(have)})")
                    return dest
                r.raise_for_status()
                if r.status_code == 206:
                    mode = "ab"
                else:
                    if have:
                        self.logger.warning("Server ignored the range request; restarting download")
                    mode, have = "wb", 0
                total = int(r.headers.get("content-length", "0") or "0") + have
                with open(dest, mode) as f:
                    self._stream(r, f, have, total, dest.name)
        except requests.RequestException as e:
            raise DownloadError(msg=f"Download of {url} failed: {e}", cause=e, context={"partial": str(dest)})
        except OSError as e:
            raise DownloadError(msg=f"Writing {dest} failed: {e}", cause=e)
        self.logger.info(f"Downloaded {dest} ({U.human_bytes(dest.stat().st_size)})")
        return dest

    def _stream(self, r: requests.Response, f, have: int, total: int, label: str) -> None:
        if not self.show_progress:
            for chunk in r.iter_content(chunk_size=CHUNK):
                if chunk:
                    f.write(chunk)
            return
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task = progress.add_task(f"Downloading {label}", total=total or None, completed=have)
            for chunk in r.iter_content(chunk_size=CHUNK):
                if not chunk:
                    continue
                f.write(chunk)
                progress.update(task, advance=len(chunk))

    # --- normalization ------------------------------------------------------------

    def decompress(self, path: Path, kind: str) -> Path:
        out = self.download_dir / f"{path.name}.unpacked"
        self.logger.info(f"Decompressing {kind} image {path.name}")
        try:
            with _OPENERS[kind](path, "rb") as src, open(out, "wb") as dst:
                shutil.copyfileobj(src, dst, CHUNK)
        except (OSError, EOFError, lzma.LZMAError) as e:
            U.safe_unlink(out)
            raise UnsupportedFormat(msg=f"Could not decompress {path.name} ({kind}): {e}", cause=e)
        return out

    def detect_format(self, path: Path) -> str:
        if self.converter.available():
            try:
                return self.converter.disk_format(path)
            except (subprocess.CalledProcessError, ValueError) as e:
                raise UnsupportedFormat(msg=f"qemu-img cannot read {path.name}: {U.cmd_error(e)}", cause=e)
        kind = sniff(path)
        if kind in CONVERTIBLE:
            raise UnsupportedFormat(msg=f"{path.name} is {kind}; qemu-img is required to convert it")
        self.logger.warning("qemu-img not available; treating the image as raw")
        return "raw"

    def normalize(self, image: SourceImage) -> SourceImage:
        path = image.download_path
        kind = sniff(path)
        if kind in _OPENERS:
            path = self.decompress(path, kind)
        fmt = self.detect_format(path)
        image.container_format = fmt
        self.logger.info(f"Image container format: {fmt}")
        if fmt == "raw":
            image.raw_path = path
            return image
        if fmt not in CONVERTIBLE:
            raise UnsupportedFormat(msg=f"Unsupported image format {fmt!r}", context={"path": str(path)})
        raw = self.download_dir / "disk.raw"
        U.safe_unlink(raw)
        try:
            self.converter.convert(path, raw, src_format=fmt, out_format="raw")
        except (subprocess.CalledProcessError, OSError) as e:
            U.safe_unlink(raw)
            raise UnsupportedFormat(msg=f"Converting {fmt} image to raw failed: {U.cmd_error(e)}", cause=e)
        image.raw_path = raw
        return image

    # --- entry point --------------------------------------------------------------

    def fetch(self, url: str, expected_checksum: Optional[str] = None) -> SourceImage:
        U.banner(self.logger, "Acquire image")
        expected = self.verifier.normalize(expected_checksum)
        local = self.local_path(url)
        if local is not None:
            if not local.is_file():
                raise DownloadError(msg=f"Image file not found: {local}")
            path, downloaded = local.resolve(), False
        else:
            path, downloaded = self.download(url, self.destination(url)), True
        image = SourceImage(origin=url, download_path=path, expected_checksum=expected)
        if expected:
            try:
                self.verifier.verify(path, expected)
            except ChecksumMismatch:
                if downloaded:
                    self.logger.error(f"Removing {path}: contents do not match the published checksum")
                    U.safe_unlink(path)
                raise
            image.verified = True
        else:
            self.logger.warning("No checksum given: image integrity cannot be verified")
        U.ensure_dir(self.download_dir)
        return self.normalize(image)
