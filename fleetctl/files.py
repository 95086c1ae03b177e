"""Upgrade images: remote URLs and local files pushed to the file repository.

A local image is uploaded to the controller the CLI is configured against
and appliances then fetch it from there (``controller://host:port/name``).
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .appliance import ApplianceAPI
from .backoff import FILE_STATUS_BACKOFF, ExponentialBackOff, retry
from .errors import FleetError, PermanentError, ValidationError
from .models import Appliance, FileState

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".img.zip"
DEFAULT_PEER_PORT = 443

_REMOTE_SCHEMES = ("http", "https")


def is_remote_image(image: str) -> bool:
    return urlsplit(image).scheme in _REMOTE_SCHEMES


def image_filename(image: str) -> str:
    """Base name of *image*, without any URL query string."""
    if is_remote_image(image):
        return os.path.basename(urlsplit(image).path)
    return os.path.basename(image)


def check_image_filename(image: str) -> None:
    if not image_filename(image).endswith(IMAGE_SUFFIX):
        raise ValidationError(
            "Invalid mimetype on image file. The format is expected to be a .img.zip archive."
        )


def local_image(image: str) -> Path:
    path = Path(image).expanduser()
    if not path.is_file():
        raise ValidationError(f'Image file not found "{image}"')
    return path


def repository_image_url(controller: Appliance, filename: str) -> str:
    """URL appliances use to fetch *filename* from *controller*'s file repository."""
    host = controller.peer_hostname or controller.hostname
    port = controller.peer_https_port or DEFAULT_PEER_PORT
    return f"controller://{host}:{port}/{filename}"


async def ensure_uploaded(
    api: ApplianceAPI,
    path: Path,
    *,
    policy: ExponentialBackOff = FILE_STATUS_BACKOFF,
    deadline: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Upload *path* unless the repository already holds it, then wait until it is ready.

    Returns the repository file name.
    """
    name = path.name
    existing = await api.file_status(name)
    if existing is not None and existing.status == FileState.FAILED.value:
        logger.info("removing failed upload %s", name)
        await api.delete_file(name)
        existing = None
    if existing is None:
        logger.info("uploading %s", path)
        await api.upload_file(path, name)
    else:
        logger.info("%s already in the file repository", name)

    async def _ready() -> None:
        status = await api.file_status(name)
        if status is None:
            raise PermanentError(f"{name} disappeared from the file repository")
        if status.status == FileState.FAILED.value:
            raise PermanentError(f"Upload of {name} failed: {status.failure_reason or 'unknown reason'}")
        if not status.ready:
            raise FleetError(f"{name} is {status.status or 'not ready'}")

    await retry(_ready, policy, deadline=deadline, sleep=sleep, clock=clock)
    return name
