"""
Hand the canonical tarball to an external tar → ext4 encoder.

The encoder is hcsshim's `tar2ext4` command. It is driven through subprocess
the same way the other build helpers drive bazel and kubectl. Each variant
is an independent invocation over the same canonical tarball.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Mapping, Protocol

from .errors import ConversionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionOptions:
    append_vhd_footer: bool = False
    convert_whiteout: bool = False
    inline_data: bool = False


class Converter(Protocol):
    def convert(self, source_tar: str, output: str, options: ConversionOptions) -> str:
        ...


@dataclass(frozen=True)
class Variant:
    name: str
    suffix: str
    options: ConversionOptions


VARIANTS: Dict[str, Variant] = {
    "ext4": Variant("ext4", ".ext4", ConversionOptions()),
    "vhd": Variant("vhd", ".ext4.vhd", ConversionOptions(append_vhd_footer=True)),
    "overlayfs": Variant("overlayfs", ".overlayfs.ext4", ConversionOptions(convert_whiteout=True)),
}


class Tar2Ext4Converter:
    def __init__(self, binary: str = "tar2ext4"):
        self.binary = binary

    def command(self, source_tar: str, output: str, options: ConversionOptions) -> List[str]:
        cmd = [self.binary, "-i", source_tar, "-o", output]
        if options.append_vhd_footer:
            cmd.append("-vhd")
        if options.convert_whiteout:
            cmd.append("-overlay")
        if options.inline_data:
            cmd.append("-inline")
        return cmd

    def convert(self, source_tar: str, output: str, options: ConversionOptions) -> str:
        if shutil.which(self.binary) is None:
            raise ConversionError(f"encoder binary not found: {self.binary}", path=output)

        cmd = self.command(source_tar, output, options)
        logger.info("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise ConversionError(f"unable to run {self.binary}: {exc}", path=output) from exc
        if proc.returncode != 0:
            tail = "\n".join(proc.stderr.strip().splitlines()[-5:])
            raise ConversionError(f"{self.binary} exited with {proc.returncode}: {tail}", path=output)
        if not os.path.isfile(output):
            raise ConversionError(f"{self.binary} produced no output", path=output)
        return output


def convert_variants(converter: Converter, source_tar: str, outputs: Mapping[str, str]) -> Dict[str, str]:
    """Encode source_tar once per requested variant.

    outputs maps a VARIANTS name to its destination path.
    """
    produced: Dict[str, str] = {}
    for name, output in outputs.items():
        variant = VARIANTS.get(name)
        if variant is None:
            raise ConversionError(f"unknown image variant: {name}")
        produced[name] = converter.convert(source_tar, output, variant.options)
        logger.info("wrote %s image %s", name, output)
    return produced
