from pathlib import Path

import pytest

import build_common
from checkout import Checkout, PatchResult
from build_common import FetchFailed

DEFCONFIG_TEXT = (
    'CONFIG_LOCALVERSION="-perf"\n'
    "# CONFIG_PID_NS is not set\n"
    "CONFIG_ARM64=y\n"
)

MAKEFILE_TEXT = (
    "VERSION = 4\n"
    "KBUILD_CFLAGS   += -O2\n"
    "LDFLAGS += -O2\n"
)

MISC_KCONFIG_TEXT = (
    'menu "Misc devices"\n'
    "config SRAM\n"
    "\tbool\n"
    "endmenu\n"
)


class FakeCheckout(Checkout):
    """Checkout whose patches never touch the tree"""

    def __init__(self, root: Path, incompatible=()):
        super().__init__(root)
        self.incompatible = set(incompatible)
        self.applied = []

    def try_apply(self, patch_file, directory=None):
        if patch_file.name in self.incompatible:
            return PatchResult.INCOMPATIBLE
        self.applied.append(patch_file.name)
        return PatchResult.APPLIED


class FakeFetch:
    """Records fetches, writes placeholder files and fake clones"""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, name, candidates, dest):
        self.calls.append(name)
        if name in self.failing:
            raise FetchFailed(name, [c.url for c in candidates])

        if candidates[0].download_type == "git":
            (dest / "kernel").mkdir(parents=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(f"patch {name}\n", encoding="utf-8")
        return dest


@pytest.fixture(autouse=True)
def build_log(tmp_path, monkeypatch):
    log_file = tmp_path / "kernel_build.log"
    monkeypatch.setattr(build_common, "BUILD_LOG_FILE", log_file)
    return log_file


@pytest.fixture
def kernel_tree(tmp_path):
    root = tmp_path / "kernel"
    defconfig = root / "arch" / "arm64" / "configs" / "vendor" / "sdmsteppe-perf_defconfig"
    defconfig.parent.mkdir(parents=True)
    defconfig.write_text(DEFCONFIG_TEXT, encoding="utf-8")

    (root / "Makefile").write_text(MAKEFILE_TEXT, encoding="utf-8")
    (root / "ksumakefile.patch").write_text("local patch\n", encoding="utf-8")

    misc = root / "drivers" / "misc"
    misc.mkdir(parents=True)
    (misc / "Kconfig").write_text(MISC_KCONFIG_TEXT, encoding="utf-8")
    (misc / "Makefile").write_text("obj-$(CONFIG_SRAM) += sram.o\n", encoding="utf-8")
    return root


@pytest.fixture
def fake_fetch():
    return FakeFetch()
