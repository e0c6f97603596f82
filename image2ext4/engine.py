"""Build and save images through the docker CLI."""

import logging
import os
import subprocess
from typing import List, Sequence

from .errors import ConfigError, EngineError

logger = logging.getLogger(__name__)


class DockerCLI:
    def __init__(self, binary: str = "docker"):
        self.binary = binary

    def _run(self, cmd: List[str], stage: str) -> None:
        logger.info("running %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except OSError as exc:
            raise EngineError(f"unable to run {self.binary}: {exc}", stage=stage) from exc

        tail: List[str] = []
        with proc:
            for line in proc.stdout:
                line = line.rstrip()
                if not line:
                    continue
                logger.info("%s: %s", stage, line)
                tail = (tail + [line])[-5:]
        if proc.returncode != 0:
            detail = "\n".join(tail)
            raise EngineError(f"command failed: {' '.join(cmd)}\n{detail}", stage=stage)

    def build(self, context_dir: str, tags: Sequence[str]) -> None:
        if not os.path.isdir(context_dir):
            raise ConfigError("build context directory does not exist", stage="build", path=context_dir)
        cmd = [self.binary, "build"]
        for tag in tags:
            cmd.extend(["-t", tag])
        cmd.append(context_dir)
        self._run(cmd, "build")

    def save(self, image: str, output: str) -> str:
        self._run([self.binary, "save", "-o", output, image], "save")
        if not os.path.isfile(output):
            raise EngineError(f"{self.binary} save produced no archive", stage="save", path=output)
        return output
