"""Command-line entry point: docker image → canonical tarball → ext4 images."""

import argparse
import logging
import sys
from typing import List, Optional

from .config import build_config
from .convert import VARIANTS
from .errors import ConfigError, Image2Ext4Error
from .pipeline import run


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="image2ext4",
        description="Build a docker image and flatten its layers into ext4 filesystem images.",
    )
    parser.add_argument("--image", help="Image reference to build and convert.")
    parser.add_argument("--data-dir", help="Directory holding the Dockerfile (default: data).")
    parser.add_argument("--base-dir", help="Directory for the work tree and output images (default: .).")
    parser.add_argument("--config", help="Optional YAML file with any of the settings above.")
    parser.add_argument(
        "--no-build",
        dest="build",
        action="store_const",
        const=False,
        help="Skip the build and convert an image already known to the engine.",
    )
    parser.add_argument(
        "--variant",
        dest="variants",
        action="append",
        choices=sorted(VARIANTS),
        help="Image variant to produce; repeat for several (default: all).",
    )
    parser.add_argument("--docker", help="docker CLI binary (default: docker).")
    parser.add_argument("--tar2ext4", help="tar2ext4 binary (default: tar2ext4).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every archive member.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    overrides = {
        "image": args.image,
        "data_dir": args.data_dir,
        "base_dir": args.base_dir,
        "build": args.build,
        "variants": args.variants,
        "docker": args.docker,
        "tar2ext4": args.tar2ext4,
        "log_level": "DEBUG" if args.verbose else None,
    }

    try:
        config = build_config(overrides, config_path=args.config)
    except ConfigError as exc:
        print(f"image2ext4: {exc}", file=sys.stderr)
        return exc.exit_code

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        artifacts = run(config)
    except Image2Ext4Error as exc:
        print(f"image2ext4: {exc}", file=sys.stderr)
        return exc.exit_code

    print(f"done: {artifacts.canonical_tarball} " + " ".join(artifacts.images.values()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
