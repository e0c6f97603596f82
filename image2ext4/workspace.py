"""Working directory layout and artifact naming for one image."""

import os
from dataclasses import dataclass
from typing import Dict, Iterable

from .convert import VARIANTS
from .errors import ConfigError, ImageIOError

WORK_DIR = "work"
EXTRACTION_DIR = "extraction"


def sanitize_image_reference(image: str) -> str:
    name = image.strip().replace("/", "_")
    if not name:
        raise ConfigError("image reference is empty")
    return name


@dataclass(frozen=True)
class Workspace:
    base: str
    image: str

    @property
    def name(self) -> str:
        return sanitize_image_reference(self.image)

    @property
    def work_dir(self) -> str:
        return os.path.join(self.base, WORK_DIR)

    @property
    def extraction_dir(self) -> str:
        return os.path.join(self.work_dir, EXTRACTION_DIR)

    @property
    def image_tarball(self) -> str:
        return os.path.join(self.base, f"{self.name}.image.tar")

    @property
    def canonical_tarball(self) -> str:
        return os.path.join(self.base, f"{self.name}.tar")

    def artifact(self, variant: str) -> str:
        try:
            suffix = VARIANTS[variant].suffix
        except KeyError:
            raise ConfigError(f"unknown image variant: {variant}") from None
        return os.path.join(self.base, f"{self.name}{suffix}")

    def artifacts(self, variants: Iterable[str]) -> Dict[str, str]:
        return {variant: self.artifact(variant) for variant in variants}

    def prepare(self) -> None:
        try:
            os.makedirs(self.work_dir, exist_ok=True)
        except OSError as exc:
            raise ImageIOError.from_os_error(exc) from exc
