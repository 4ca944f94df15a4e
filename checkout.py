"""
Handle to the kernel source tree the build mutates in place
"""
import enum
import os
from pathlib import Path
from typing import Optional

from build_common import log_message, run_cmd
from fetcher import Candidate, fetch

# Defconfig patched by the pipeline and used by the build
DEFCONFIG_PATH = Path("arch") / "arm64" / "configs" / "vendor" / "sdmsteppe-perf_defconfig"


class PatchResult(enum.Enum):
    APPLIED = "applied"
    INCOMPATIBLE = "incompatible"


class Checkout:
    """
    The kernel checkout shared by every feature unit

    Args:
        root (Path): Top of the kernel source tree
        defconfig (Path): Defconfig path relative to root
    """

    def __init__(self, root: Path, defconfig: Path = DEFCONFIG_PATH):
        self.root = Path(root).resolve()
        self.defconfig = defconfig

    def __repr__(self):
        return f"Checkout({str(self.root)!r})"

    def path(self, relative) -> Path:
        return self.root / relative

    @property
    def defconfig_path(self) -> Path:
        return self.root / self.defconfig

    def is_valid(self) -> bool:
        return (self.root / "Makefile").is_file() and self.defconfig_path.is_file()

    def try_apply(self, patch_file: Path, directory: Optional[Path] = None) -> PatchResult:
        """
        Applies a patch with -p1 only if a dry run succeeds first

        Args:
            patch_file (Path): Patch to apply
            directory (Path): Directory relative to root to apply in

        Returns:
            PatchResult: APPLIED (also when a previous run already applied
            it), or INCOMPATIBLE if the dry run or the apply was rejected
        """
        cwd = self.path(directory) if directory else self.root
        patch_file = patch_file.resolve()

        if run_cmd(f"patch -p1 -N --dry-run < '{patch_file}'", cwd=cwd,
                   fatal_on_error=False, quiet=True) is None:
            if run_cmd(f"patch -p1 -R -f --dry-run < '{patch_file}'", cwd=cwd,
                       fatal_on_error=False, quiet=True) is not None:
                log_message(f"'{patch_file.name}' is already applied")
                return PatchResult.APPLIED
            return PatchResult.INCOMPATIBLE

        if run_cmd(f"patch -p1 -N < '{patch_file}'", cwd=cwd,
                   fatal_on_error=False) is None:
            return PatchResult.INCOMPATIBLE

        return PatchResult.APPLIED

    def clone(self, url: str, target: Path,
              branch: Optional[str] = None,
              depth: Optional[int] = None,
              fetch_fn=fetch) -> bool:
        """
        Clones a repository into the checkout unless the target exists

        Returns:
            bool: False if the target already existed
        """
        dest = self.path(target)
        if dest.exists():
            log_message(f"'{target}' already exists, skipping clone")
            return False

        candidate = Candidate(url, download_type="git", branch=branch, depth=depth)
        fetch_fn(str(target), [candidate], dest)
        return True

    def symlink(self, link: Path, target: str):
        """Creates link -> target inside the checkout, replacing an old link"""
        link_path = self.path(link)
        link_path.parent.mkdir(parents=True, exist_ok=True)
        if link_path.is_symlink():
            link_path.unlink()
        elif link_path.is_dir():
            raise IsADirectoryError(f"Refusing to replace directory '{link_path}'")
        elif link_path.exists():
            log_message(f"WARNING: Replacing existing '{link}' with a symlink")
            link_path.unlink()

        os.symlink(target, link_path)
        log_message(f"Linked '{link}' -> '{target}'")
