"""Resolve clip, music and watermark references to validated local files."""

from __future__ import annotations

import hashlib
import logging
import os
import subprocess
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import httpx
from PIL import Image, ImageDraw, ImageFont

from .errors import AssetError
from .ffmpeg import MediaInfo, MediaProber
from .retry import RetryPolicy
from .s3 import is_remote, is_storage_url

logger = logging.getLogger(__name__)

TEXT_PREFIX = "text:"


class AssetKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


@dataclass(frozen=True)
class ResolvedAsset:
    ref: str
    path: str
    kind: AssetKind
    info: MediaInfo | None = None
    downloaded: bool = False
    repaired: bool = False

    @property
    def has_audio(self) -> bool:
        return bool(self.info and self.info.has_audio)


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def url_digest(url: str) -> str:
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


class AssetResolver:
    def __init__(
        self,
        storage,
        work_dir,
        *,
        asset_root=None,
        prober: MediaProber | None = None,
        ffmpeg_binary: str = "ffmpeg",
        retry: RetryPolicy | None = None,
        http_timeout: float = 60.0,
    ):
        self.storage = storage
        self.work_dir = Path(work_dir)
        self.asset_root = Path(asset_root) if asset_root else None
        self.prober = prober or MediaProber()
        self.ffmpeg_binary = ffmpeg_binary
        self.retry = retry or RetryPolicy(max_attempts=3, delays=(1.0, 2.0), give_up_on=(AssetError,))
        self.http_timeout = http_timeout
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    def asset_dir(self, job_id) -> Path:
        return self.work_dir / str(job_id) / "assets"

    def resolve(self, ref: str, kind: AssetKind, job_id) -> ResolvedAsset:
        ref = str(ref or "").strip()
        if not ref:
            raise AssetError(f"Empty {kind.value} reference")
        if kind is AssetKind.IMAGE and ref.startswith(TEXT_PREFIX):
            return ResolvedAsset(ref=ref, path=str(self.render_text(ref[len(TEXT_PREFIX):], job_id)), kind=kind)

        downloaded = False
        if is_remote(ref):
            path = self._download(ref, job_id)
            downloaded = True
        else:
            path = self._local(ref)

        if kind is AssetKind.IMAGE:
            self._verify_image(path)
            return ResolvedAsset(ref=ref, path=str(path), kind=kind, downloaded=downloaded)

        problem, info = self._check_media(path, kind)
        if problem is None:
            return ResolvedAsset(ref=ref, path=str(path), kind=kind, info=info, downloaded=downloaded)

        logger.warning("[%s] %s failed validation (%s); attempting repair", job_id, ref, problem)
        repaired = self._repair(path, job_id)
        problem, info = self._check_media(repaired, kind)
        if problem is not None:
            raise AssetError(f"{kind.value} asset {ref} is unusable after repair: {problem}")
        logger.info("[%s] Repaired %s -> %s", job_id, ref, repaired)
        return ResolvedAsset(ref=ref, path=str(repaired), kind=kind, info=info, downloaded=downloaded, repaired=True)

    # -- locating ---------------------------------------------------------

    def _local(self, ref: str) -> Path:
        path = Path(ref)
        if not path.is_absolute() and self.asset_root is not None:
            path = self.asset_root / path
        if not path.is_file():
            raise AssetError(f"Asset not found: {path}")
        return path

    @contextmanager
    def _path_lock(self, key: str):
        # entries are reference counted and dropped once no download waits on them
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def _download(self, url: str, job_id) -> Path:
        suffix = Path(urlsplit(url).path).suffix
        dest = self.asset_dir(job_id) / f"{url_digest(url)}{suffix}"
        with self._path_lock(str(dest)):
            if dest.is_file() and dest.stat().st_size > 0:
                logger.debug("[%s] Serving %s from %s", job_id, url, dest)
                return dest
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
            try:
                self.retry.call(self._fetch, url, tmp, description=f"download {url}")
                os.replace(tmp, dest)
            except AssetError:
                raise
            except Exception as exc:
                raise AssetError(f"Failed to download {url}: {exc}") from exc
            finally:
                tmp.unlink(missing_ok=True)
        logger.info("[%s] Downloaded %s", job_id, url)
        return dest

    def _fetch(self, url: str, dest: Path) -> None:
        if is_storage_url(url):
            self.storage.download(url, dest)
        else:
            with httpx.stream("GET", url, timeout=self.http_timeout, follow_redirects=True) as response:
                response.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
        if not dest.is_file() or dest.stat().st_size == 0:
            raise AssetError(f"Downloaded file for {url} is empty")

    # -- validation -------------------------------------------------------

    def _check_media(self, path: Path, kind: AssetKind) -> tuple[str | None, MediaInfo | None]:
        try:
            info = self.prober.probe(path)
        except AssetError as exc:
            return str(exc), None
        if kind is AssetKind.VIDEO and not info.has_video:
            return "no video stream", info
        if kind is AssetKind.AUDIO and not info.has_audio:
            return "no audio stream", info
        if info.duration <= 0:
            return "non-positive duration", info
        return None, info

    def _repair(self, path: Path, job_id) -> Path:
        out_dir = self.asset_dir(job_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        repaired = out_dir / f"repaired_{uuid.uuid4().hex[:8]}_{path.name}"
        cmd = [
            self.ffmpeg_binary, "-hide_banner", "-v", "error", "-y",
            "-i", str(path), "-map", "0", "-c", "copy", str(repaired),
        ]
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=120)
        except (OSError, subprocess.SubprocessError) as exc:
            raise AssetError(f"Repair of {path} failed: {exc}") from exc
        return repaired

    def _verify_image(self, path: Path) -> None:
        try:
            with Image.open(path) as img:
                img.verify()
        except (OSError, SyntaxError) as exc:
            raise AssetError(f"Unreadable image {path}: {exc}") from exc

    # -- text watermarks --------------------------------------------------

    def render_text(self, text: str, job_id, font_size: int = 44) -> Path:
        """Rasterise a text watermark to a transparent PNG sized to the text."""
        text = text.strip()
        if not text:
            raise AssetError("Empty text watermark")
        dest = self.asset_dir(job_id) / f"wm_{hashlib.sha256(text.encode('utf-8')).hexdigest()[:16]}.png"
        if dest.is_file():
            return dest

        try:
            font = ImageFont.truetype("DejaVuSans-Bold.ttf", font_size)
        except OSError:
            font = ImageFont.load_default()

        probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        bbox = probe.textbbox((0, 0), text, font=font)
        text_w, text_h = bbox[2] - bbox[0], bbox[3] - bbox[1]
        pad = max(8, font_size // 3)

        img = Image.new("RGBA", (text_w + 2 * pad, text_h + 2 * pad), (0, 0, 0, 0))
        draw = ImageDraw.Draw(img)
        draw.text((pad - bbox[0] + 2, pad - bbox[1] + 2), text, fill=(0, 0, 0, 96), font=font)
        draw.text((pad - bbox[0], pad - bbox[1]), text, fill=(255, 255, 255, 160), font=font)

        dest.parent.mkdir(parents=True, exist_ok=True)
        img.save(dest, format="PNG")
        return dest
