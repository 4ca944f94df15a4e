"""
Feature units woven into the kernel checkout before the build

A feature unit bundles repository clones, symlinks, patches and config
edits for one optional kernel capability. FEATURE_CATALOG lists them in
the order they must be applied: later units rely on the config keys and
tree layout left by earlier ones.
"""
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import config_mutator
from build_common import FetchFailed, PatchIncompatible, log_message
from checkout import Checkout, PatchResult
from fetcher import Candidate

FetchFn = Callable[[str, list, Path], Path]


class Toggle(enum.Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSPECIFIED = "unspecified"


class Criticality(enum.Enum):
    # Any failure aborts the whole run
    MANDATORY = "mandatory"
    # Fetch and patch failures are skipped per step
    BEST_EFFORT = "best-effort"


@dataclass(frozen=True)
class RepoRef:
    url: str
    target: Path
    branch: Optional[str] = None
    depth: Optional[int] = None

    def describe(self) -> str:
        return f"clone {self.url} into {self.target}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        # An existing target counts as a completed clone
        checkout.clone(self.url, self.target, branch=self.branch,
                       depth=self.depth, fetch_fn=fetch)


@dataclass(frozen=True)
class SymlinkRef:
    link: Path
    target: str

    def describe(self) -> str:
        return f"link {self.link} -> {self.target}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        checkout.symlink(self.link, self.target)


@dataclass(frozen=True)
class PatchSource:
    """
    A patch fetched into directory/filename and applied from directory

    A patch without url must already ship with the checkout.
    """
    filename: str
    url: Optional[str] = None
    directory: Optional[Path] = None

    def describe(self) -> str:
        return f"apply {self.filename}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        base = checkout.path(self.directory) if self.directory else checkout.root
        patch_file = base / self.filename

        # Only a finished clone provides the directory
        if self.directory and not base.is_dir():
            raise FetchFailed(self.filename, [f"missing directory {self.directory}"])

        if self.url:
            fetch(self.filename, [Candidate(self.url)], patch_file)
        elif not patch_file.is_file():
            raise FetchFailed(self.filename, [f"local file {patch_file}"])

        if checkout.try_apply(patch_file, self.directory) is PatchResult.INCOMPATIBLE:
            raise PatchIncompatible(patch_file)
        log_message(f"{self.filename} applied successfully")


@dataclass(frozen=True)
class AppendLine:
    line: str
    target: Optional[Path] = None

    def describe(self) -> str:
        return f"append '{self.line}' to {self.target or 'defconfig'}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        path = checkout.path(self.target) if self.target else checkout.defconfig_path
        config_mutator.append_if_absent(path, self.line)


@dataclass(frozen=True)
class SubstitutePattern:
    pattern: str
    replacement: str
    target: Optional[Path] = None

    def describe(self) -> str:
        return f"substitute '{self.pattern}' in {self.target or 'defconfig'}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        path = checkout.path(self.target) if self.target else checkout.defconfig_path
        config_mutator.substitute_pattern(path, self.pattern, self.replacement)


@dataclass(frozen=True)
class InsertBefore:
    line: str
    anchor: str
    target: Path

    def describe(self) -> str:
        return f"insert '{self.line}' into {self.target}"

    def apply(self, checkout: Checkout, fetch: FetchFn):
        config_mutator.insert_before(checkout.path(self.target), self.line, self.anchor)


@dataclass(frozen=True)
class FeatureUnit:
    """
    One independently toggleable kernel capability

    flag is the CLI flag stem ("ksu" for --ksu/--no-ksu). Units without a
    flag are unconditional and always applied.
    """
    name: str
    description: str
    flag: Optional[str] = None
    criticality: Criticality = Criticality.MANDATORY
    clones: tuple = ()
    links: tuple = ()
    patches: tuple = ()
    config_edits: tuple = ()

    @property
    def unconditional(self) -> bool:
        return self.flag is None

    def steps(self) -> list:
        """Steps in execution order: clones, links, patches, config edits"""
        return [*self.clones, *self.links, *self.patches, *self.config_edits]


def defconfig_lines(*lines: str) -> tuple:
    return tuple(AppendLine(line) for line in lines)


def commit_patches(repo: str, commits: list[str], prefix: str) -> tuple:
    return tuple(
        PatchSource(f"{prefix}{index}.patch", f"https://github.com/{repo}/commit/{sha}.patch")
        for index, sha in enumerate(commits, start=1)
    )


NETHUNTER_PATCHES = (
    "https://gitlab.com/kalilinux/nethunter/build-scripts/"
    "kali-nethunter-kernel-builder/-/raw/main/patches/4.14"
)
KSU_PATCHES = "https://github.com/TheSillyOk/kernel_ls_patches/raw/refs/heads/master"

KSU_SETUP_URI = "https://github.com/KernelSU-Next/KernelSU-Next"
KSU_BRANCH = "legacy"

BASELINE = FeatureUnit(
    name="baseline",
    description="Wireless injection drivers and container/filesystem options",
    patches=(
        PatchSource("rtl88xxau.patch", f"{NETHUNTER_PATCHES}/add-rtl88xxau-5.6.4.2-drivers.patch"),
        PatchSource("wifi-injection.patch", f"{NETHUNTER_PATCHES}/add-wifi-injection-4.14.patch"),
    ),
    config_edits=(
        SubstitutePattern(r"^# CONFIG_PID_NS is not set$", "CONFIG_PID_NS=y"),
        *defconfig_lines(
            "CONFIG_POSIX_MQUEUE=y",
            "CONFIG_SYSVIPC=y",
            "CONFIG_CGROUP_DEVICE=y",
            "CONFIG_DEVTMPFS=y",
            "CONFIG_IPC_NS=y",
            "CONFIG_DEVTMPFS_MOUNT=y",
            "CONFIG_EROFS_FS=y",
            "CONFIG_FSCACHE=y",
            "CONFIG_FSCACHE_STATS=y",
            "CONFIG_FSCACHE_HISTOGRAM=y",
            "CONFIG_SECURITY_SELINUX_DEVELOP=y",
            "CONFIG_FS_ENCRYPTION=y",
            "CONFIG_EXT4_ENCRYPTION=y",
            "CONFIG_EXT4_FS_ENCRYPTION=y",
        ),
        SubstitutePattern(r"KBUILD_CFLAGS\s+\+= -O2", "KBUILD_CFLAGS   += -O3", Path("Makefile")),
        SubstitutePattern(r"LDFLAGS\s+\+= -O2", "LDFLAGS += -O3", Path("Makefile")),
    ),
)

DTBO = FeatureUnit(
    name="dtbo",
    description="Device-tree overlay (dtbo) compile support",
    patches=commit_patches("xiaomi-sm6150/android_kernel_xiaomi_sm6150", [
        "e517bc363a19951ead919025a560f843c2c03ad3",
        "a62a3b05d0f29aab9c4bf8d15fe786a8c8a32c98",
        "4b89948ec7d610f997dd1dab813897f11f403a06",
        "fade7df36b01f2b170c78c63eb8fe0d11c613c4a",
        "2628183db0d96be8dae38a21f2b09cb10978f423",
        "31f4577af3f8255ae503a5b30d8f68906edde85f",
    ], prefix="dtbo"),
)

F2FS = FeatureUnit(
    name="f2fs",
    flag="f2fs",
    description="F2FS compression support",
    patches=(
        PatchSource(
            "f2fscompression.patch",
            "https://github.com/tbyool/android_kernel_xiaomi_sm6150/commit/"
            "02baeab5aaf5319e5d68f2319516efed262533ea.patch",
        ),
    ),
    config_edits=defconfig_lines(
        "CONFIG_F2FS_FS_COMPRESSION=y",
        "CONFIG_F2FS_FS_LZ4=y",
    ),
)

LN8000 = FeatureUnit(
    name="ln8000",
    flag="ln8000",
    description="LN8000 charge pump support",
    patches=commit_patches("PixelOS-Devices-old/kernel_xiaomi_sm6150", [
        "e64a07f8d8beea4d7470e9ad4ef1b712d15909b5",
        "39af7bb35ee22c2e6accde8c413151eda6b985d8",
        "53133f4d9620f27d3d8fe3e021165cc93036cfb7",
        "b8a6b2aefce81a1f6f51b9a46113ace0624aebdd",
        "9d0cf7fd14477f290d7eeb8cb0107f29816935c0",
        "022c13d583a127e9cc5534c778ea6d250b4a0528",
        "2024605203354093ed2ec8294b7b0342baaf9c9d",
        "bc4d92b3b9a6fda3504ef887685ad271e8dfd08d",
        "39c4206ac149ebde881ca5e7be6f6f6a79f00ec6",
        "49afb7c867b8ce8e28faa9564a010a7a4daa1eab",
        "2b427aaf5af9748356d06f4048ef1f9b29ebf354",
    ], prefix="ln8k"),
    config_edits=defconfig_lines("CONFIG_CHARGER_LN8000=y"),
)

KSU = FeatureUnit(
    name="ksu",
    flag="ksu",
    description="KernelSU-Next root access with SUSFS",
    criticality=Criticality.BEST_EFFORT,
    clones=(RepoRef(KSU_SETUP_URI, Path("KernelSU"), branch=KSU_BRANCH),),
    links=(SymlinkRef(Path("drivers") / "kernelsu", "../KernelSU/kernel"),),
    patches=(
        PatchSource(
            "ksu.patch",
            "https://github.com/ximi-mojito-test/mojito_krenol/commit/"
            "8e25004fdc74d9bf6d902d02e402620c17c692df.patch",
        ),
        # Ships with the kernel tree
        PatchSource("ksumakefile.patch"),
        PatchSource("kpatch_fix.patch", f"{KSU_PATCHES}/kpatch_fix.patch"),
        PatchSource("susfs.patch", f"{KSU_PATCHES}/susfs-2.0.0.patch"),
        PatchSource(
            "ksun_susfs.patch",
            "https://raw.githubusercontent.com/TheSillyOk/kernel_ls_patches/"
            "refs/heads/master/KSUN/KSUN-SUSFS-2.0.0.patch",
            directory=Path("KernelSU"),
        ),
    ),
    config_edits=defconfig_lines(
        "CONFIG_KSU=y",
        "CONFIG_KSU_LSM_SECURITY_HOOKS=y",
        "CONFIG_KSU_MANUAL_HOOKS=y",
        "CONFIG_KSU_SUSFS=y",
        "CONFIG_KSU_SUSFS_SUS_PATH=n",
        "CONFIG_KSU_SUSFS_SPOOF_CMDLINE_OR_BOOTCONFIG=n",
    ),
)

KPROFILES = FeatureUnit(
    name="kprofiles",
    flag="kprofiles",
    description="KProfiles CPU/GPU profile management",
    clones=(
        RepoRef("https://github.com/beakthoven/Kprofiles.git",
                Path("drivers") / "misc" / "kprofiles", depth=1),
    ),
    config_edits=(
        InsertBefore('source "drivers/misc/kprofiles/Kconfig"', r"^endmenu",
                     Path("drivers") / "misc" / "Kconfig"),
        AppendLine("obj-$(CONFIG_KPROFILES) += kprofiles/", Path("drivers") / "misc" / "Makefile"),
        AppendLine("CONFIG_KPROFILES=y"),
    ),
)

NETHUNTER_FULL = FeatureUnit(
    name="nethunter-full",
    flag="nethunter-full",
    description="Kali NetHunter HID, USB serial and extra drivers",
    config_edits=defconfig_lines(
        # HID keyboard/mouse gadget
        "CONFIG_USB_CONFIGFS_F_HID=y",
        "CONFIG_USB_GADGET=y",
        "CONFIG_USB_CONFIGFS=y",
        "CONFIG_USB_LIBCOMPOSITE=y",
        # USB serial/RNDIS
        "CONFIG_USB_CONFIGFS_SERIAL=y",
        "CONFIG_USB_CONFIGFS_RNDIS=y",
        "CONFIG_USB_CONFIGFS_ECM=y",
        "CONFIG_USB_CONFIGFS_NCM=y",
        "CONFIG_USB_CONFIGFS_EEM=y",
        # USB ACM and serial
        "CONFIG_USB_ACM=y",
        "CONFIG_USB_SERIAL=y",
        "CONFIG_USB_SERIAL_GENERIC=y",
        "CONFIG_USB_SERIAL_OPTION=y",
        "CONFIG_USB_WDM=y",
        # Filesystems
        "CONFIG_OVERLAY_FS=y",
        "CONFIG_SQUASHFS=y",
        "CONFIG_SQUASHFS_XZ=y",
        # Bluetooth
        "CONFIG_BT_HCIBTUSB=y",
        "CONFIG_BT_RFCOMM=y",
        # Network filtering
        "CONFIG_NETFILTER_XT_TARGET_TCPMSS=y",
        "CONFIG_IP_NF_TARGET_MASQUERADE=y",
        "CONFIG_IP6_NF_TARGET_MASQUERADE=y",
    ),
)

# Application order, dtbo must come before every optional unit
FEATURE_CATALOG = (
    BASELINE,
    DTBO,
    F2FS,
    LN8000,
    KSU,
    KPROFILES,
    NETHUNTER_FULL,
)

# Positional CLI order of the toggleable units
CLI_FLAG_ORDER = ("ksu", "ln8000", "f2fs", "nethunter-full", "kprofiles")
