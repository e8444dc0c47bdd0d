"""Config-drive media synthesis.

The guest's first-boot agent reads the OpenStack config-drive layout, so the
user data always lands at ``openstack/2015-10-15/user_data`` on a volume
labelled ``config-2``.
"""

import logging
import shutil
import subprocess
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pve_provisioner.errors import LocalIOError
from pve_provisioner.models import GeneratedMedia, media_filename


logger = logging.getLogger(__name__)

CONFIG_DRIVE_VERSION = "2015-10-15"
CONFIG_DRIVE_LABEL = "config-2"
USER_DATA_PATH = f"openstack/{CONFIG_DRIVE_VERSION}/user_data"
ISO_TOOLS = ["genisoimage", "mkisofs", "xorriso"]


def shutil_which_first(candidates: list[str]) -> str | None:
    for name in candidates:
        path = shutil.which(name)
        if path:
            return path
    return None


def build_iso_command(tool: str, output_path: Path, source_dir: Path) -> list[str]:
    cmd = [tool]
    if Path(tool).name == "xorriso":
        cmd.extend(["-as", "mkisofs"])
    cmd.extend(
        [
            "-r",
            "-J",
            "-jcharset",
            "utf-8",
            "-V",
            CONFIG_DRIVE_LABEL,
            "-o",
            str(output_path),
            str(source_dir),
        ]
    )
    return cmd


@contextmanager
def scratch_dir(work_dir: str | Path, prefix: str) -> Iterator[Path]:
    """A private temporary directory, removed on every exit path."""
    try:
        Path(work_dir).mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=work_dir))
    except OSError as exc:
        raise LocalIOError(f"unable to create temporary directory in {work_dir}: {exc}") from exc
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("removed %s", path)


def build_config_drive(
    user_data: bytes, output_path: Path, work_dir: str | Path, vmid: int
) -> Path:
    tool = shutil_which_first(ISO_TOOLS)
    if not tool:
        raise LocalIOError(f"none of {', '.join(ISO_TOOLS)} found in PATH")

    with scratch_dir(work_dir, f"cfgdrive-{vmid}-fs-") as fs_root:
        target = fs_root / USER_DATA_PATH
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(user_data)
        except OSError as exc:
            raise LocalIOError(f"unable to stage user data: {exc}") from exc

        cmd = build_iso_command(tool, output_path, fs_root)
        logger.debug("building config drive command=%s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            stdout = (exc.stdout or "").strip()
            raise LocalIOError(
                f"config drive generation failed with {tool}: {stderr or stdout or exc}"
            ) from exc
        except OSError as exc:
            raise LocalIOError(f"unable to run {tool}: {exc}") from exc

    if not output_path.is_file():
        raise LocalIOError(f"{tool} did not produce {output_path}")
    return output_path


@contextmanager
def staged_media(
    *,
    vmid: int,
    vm_name: str,
    user_data_path: Path,
    storage: str,
    work_dir: str | Path,
) -> Iterator[GeneratedMedia]:
    """Build the config drive for a VM; the image directory lives for the block only."""
    try:
        user_data = Path(user_data_path).read_bytes()
    except OSError as exc:
        raise LocalIOError(f"unable to read user data {user_data_path}: {exc}") from exc

    with scratch_dir(work_dir, f"cfgdrive-{vmid}-iso-") as iso_dir:
        output_path = iso_dir / media_filename(vmid, vm_name)
        build_config_drive(user_data, output_path, work_dir, vmid)
        logger.info("config drive created at %s", output_path)
        yield GeneratedMedia(
            vmid=vmid, vm_name=vm_name, local_path=str(output_path), storage=storage
        )
