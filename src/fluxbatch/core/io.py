from __future__ import annotations

import zipfile
from collections.abc import Iterable
from pathlib import Path

from fluxbatch.core.models import GeneratedImage


def parse_prompts(text: str) -> list[str]:
    """One prompt per line; surrounding whitespace trimmed, blank lines dropped."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def read_prompts(filepath: str | Path) -> list[str]:
    with open(filepath, "r", encoding="utf-8") as f:
        return parse_prompts(f.read())


def save_images(images: Iterable[GeneratedImage], output_dir: str | Path) -> list[Path]:
    """
    Write images to a directory as image-<n>.png, n being the 1-based prompt position.

    Args:
        images (Iterable[GeneratedImage]): Images to write
        output_dir (str | Path): Target directory, created if missing

    Returns:
        list[Path]: Paths of the written files
    """
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for image in images:
        path = directory / image.filename
        path.write_bytes(image.data)
        paths.append(path)
    return paths


def write_zip(images: Iterable[GeneratedImage], zip_path: str | Path) -> Path:
    """
    Bundle images into a zip archive, named like save_images() names them.

    Args:
        images (Iterable[GeneratedImage]): Images to archive
        zip_path (str | Path): Archive to create (overwritten if present)

    Returns:
        Path: Path of the archive
    """
    path = Path(zip_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for image in images:
            archive.writestr(image.filename, image.data)
    return path
