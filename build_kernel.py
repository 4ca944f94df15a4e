#!/usr/bin/env python3

import argparse
import os
import shutil
import sys
from pathlib import Path
from textwrap import dedent
from typing import Optional

import build_common
from build_common import BuildError, log_message, run_cmd
from checkout import Checkout
from config_mutator import substitute_pattern
from features import CLI_FLAG_ORDER, FEATURE_CATALOG, Toggle
from fetcher import Candidate, fetch, latest_release_assets
from pipeline import FeaturePipeline

# Target architecture and build identity
ARCH = "arm64"
KBUILD_BUILD_USER = "riaru"
KBUILD_BUILD_HOST = "ximiedits"

# Defconfig and device fragment used for kernel build
KERNEL_DEFCONFIG = "vendor/sdmsteppe-perf_defconfig"
DEVICE_CONFIG_FRAGMENT = "vendor/sweet.config"
LOCALVERSION_FROM = 'CONFIG_LOCALVERSION="-perf"'
LOCALVERSION_TO = 'CONFIG_LOCALVERSION="-perf-neon"'

# Identity of the snapshot commit made before building
COMMIT_EMAIL = "riarucompile@riaru.com"
COMMIT_NAME = "riaru-compile"

# Global Paths
KERNEL_SOURCE_DIR = None
OUT_DIR = None
CLANG_PATH = None
GCC64_PATH = None
GCC32_PATH = None

# Config for downloading required toolchains
TOOLCHAIN_CONFIG = {
    "Clang": {
        "target_dir_name": "clang",
        "bin_path_suffix": "bin",
        "download_type": "git",
        "candidates": [
            Candidate(
                "https://gitlab.com/crdroidandroid/android_prebuilts_clang_host_linux-x86_clang-r584948.git",
                download_type="git", branch="18.0", depth=1, verify="bin/clang"
            ),
            Candidate(
                "https://github.com/crdroidandroid/android_prebuilts_clang_host_linux-x86_clang-r584948.git",
                download_type="git", depth=1, verify="bin/clang"
            ),
            # Older but stable fallback
            Candidate(
                "https://gitlab.com/crdroidandroid/android_prebuilts_clang_host_linux-x86_clang-r547379.git",
                download_type="git", branch="15.0", depth=1, verify="bin/clang"
            ),
        ],
    },
    "GCC64": {
        "target_dir_name": "gcc64",
        "bin_path_suffix": "bin",
        "download_type": "github_release",
        "repo": "mvaisakh/gcc-build",
        "asset_pattern": r"eva-gcc-arm64.*\.xz$",
        "cross_compile": "aarch64-elf-",
    },
    "GCC32": {
        "target_dir_name": "gcc32",
        "bin_path_suffix": "bin",
        "download_type": "github_release",
        "repo": "mvaisakh/gcc-build",
        "asset_pattern": r"eva-gcc-arm-.*\.xz$",
        "cross_compile": "arm-eabi-",
    },
}


def feature_usage() -> str:
    units = {unit.flag: unit for unit in FEATURE_CATALOG if unit.flag}
    lines = []
    for position, flag in enumerate(CLI_FLAG_ORDER, start=1):
        unit = units[flag]
        lines.append(f"  {position}. --{flag} | --no-{flag}")
        lines.append(f"       {unit.description}")
    return "\n".join(lines)


def parse_selection(values: list[str],
                    parser: argparse.ArgumentParser) -> dict[str, Toggle]:
    """
    Maps the positional feature flags to a selection

    Position N only accepts the --x/--no-x pair of the Nth feature.
    A known flag in the wrong position is ignored with a warning,
    an empty value leaves the feature unspecified.

    Args:
        values (list[str]): Feature arguments in command-line order
        parser: Parser used to report usage errors

    Returns:
        dict[str, Toggle]: Toggle for every feature
    """
    if len(values) > len(CLI_FLAG_ORDER):
        parser.error(f"too many feature flags: {' '.join(values)}")

    known = {f"--{flag}" for flag in CLI_FLAG_ORDER}
    known |= {f"--no-{flag}" for flag in CLI_FLAG_ORDER}

    selection = {flag: Toggle.UNSPECIFIED for flag in CLI_FLAG_ORDER}
    for flag, value in zip(CLI_FLAG_ORDER, values):
        if not value:
            continue
        if value == f"--{flag}":
            selection[flag] = Toggle.ENABLED
        elif value == f"--no-{flag}":
            selection[flag] = Toggle.DISABLED
        elif value in known:
            log_message(f"WARNING: '{value}' given where --{flag} | --no-{flag} "
                        f"is expected, ignoring")
        else:
            parser.error(f"unrecognized arguments: {value}")

    return selection


def unpack_tarball(archive_path: Path, dest_dir: Path):
    """
    Unpacks a GCC release tarball into its toolchain directory
    (gcc64 or gcc32). Release archives wrap everything in one top-level
    folder, which is flattened so dest_dir/bin holds the compilers
    """
    log_message(f"Extracting '{archive_path}' to '{dest_dir}'...")

    temp_dir = archive_path.parent / f"temp_extract_{os.getpid()}"
    if temp_dir.exists():
        shutil.rmtree(temp_dir)
    temp_dir.mkdir(parents=True)

    try:
        # Release assets are plain tarballs despite the .xz suffix
        run_cmd(f"tar -xf '{archive_path}' -C '{temp_dir}'", fatal_on_error=True)

        contents = list(temp_dir.iterdir())
        dest_dir.mkdir(parents=True, exist_ok=True)

        if len(contents) == 1 and contents[0].is_dir():
            log_message(f"Flattening archive by moving contents of '{contents[0]}'...")
            contents = list(contents[0].iterdir())
        for item in contents:
            shutil.move(str(item), str(dest_dir / item.name))
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    log_message(f"Extraction complete: '{archive_path.name}'")


def get_toolchain(name: str, config: dict, target_dir: Path):
    """
    Fetches a toolchain if it is not already present
    """
    log_message(f"Checking toolchain '{name}' at '{target_dir}'...")

    if target_dir.exists():
        log_message(f"Local {name} dir found, using it.")
        return

    download_type = config["download_type"]

    if download_type == "git":
        fetch(name, config["candidates"], target_dir)

    elif download_type == "github_release":
        urls = latest_release_assets(config["repo"], config["asset_pattern"])
        if not urls:
            raise BuildError(f"No release asset matching '{config['asset_pattern']}' "
                             f"in {config['repo']}")

        url = urls[0]
        archive = target_dir.parent / url.rsplit("/", 1)[-1]
        fetch(name, [Candidate(url)], archive)
        try:
            unpack_tarball(archive, target_dir)
        finally:
            archive.unlink(missing_ok=True)

    else:
        raise BuildError(f"Unknown download_type '{download_type}' for '{name}'")

    log_message(f"{name} toolchain ready at '{target_dir}'")


def setup_environment(kernel_dir: Path, toolchain_dir: Path):
    """
    Exports the build environment and sets global paths
    """
    log_message("Setting up build environment...")

    global KERNEL_SOURCE_DIR, OUT_DIR, CLANG_PATH, GCC64_PATH, GCC32_PATH

    os.environ["ARCH"] = ARCH
    os.environ["KBUILD_BUILD_USER"] = KBUILD_BUILD_USER
    os.environ["KBUILD_BUILD_HOST"] = KBUILD_BUILD_HOST
    log_message(f"Set environment variables: ARCH={os.environ['ARCH']}, "
                f"KBUILD_BUILD_USER={os.environ['KBUILD_BUILD_USER']}, "
                f"KBUILD_BUILD_HOST={os.environ['KBUILD_BUILD_HOST']}")

    KERNEL_SOURCE_DIR = kernel_dir
    OUT_DIR = kernel_dir / "out"

    def bin_dir(name: str) -> Path:
        config = TOOLCHAIN_CONFIG[name]
        return toolchain_dir / config["target_dir_name"] / config["bin_path_suffix"]

    CLANG_PATH = bin_dir("Clang")
    GCC64_PATH = bin_dir("GCC64")
    GCC32_PATH = bin_dir("GCC32")

    log_message("Updating global PATH environment variable...")

    # Add unique paths to the beginning of the PATH
    current_path_dirs = os.environ["PATH"].split(os.pathsep)
    new_path_dirs = []
    for x in [CLANG_PATH, GCC64_PATH, GCC32_PATH]:
        x_str = str(x)
        if x_str not in current_path_dirs:
            new_path_dirs.append(x_str)

    os.environ["PATH"] = os.pathsep.join(new_path_dirs + current_path_dirs)
    log_message(f"New PATH: {os.environ['PATH']}")


def setup_toolchain(toolchain_dir: Path):
    """
    Makes sure Clang and both GCC cross compilers are present
    """
    log_message("Setting up toolchains...")

    for name, config in TOOLCHAIN_CONFIG.items():
        get_toolchain(name, config, toolchain_dir / config["target_dir_name"])

    clang = CLANG_PATH / "clang"
    if not clang.is_file():
        raise BuildError(f"Clang binary not found: '{clang}'")

    log_message("Toolchains ready")


def clean_build_artifacts():
    """
    Cleans the kernel build environment:
    - Runs 'make clean' and 'make mrproper'
    - Removes the output directory (OUT_DIR)
    """
    log_message("Cleaning kernel build artifacts...")

    run_cmd("make clean", cwd=KERNEL_SOURCE_DIR, fatal_on_error=False)
    run_cmd("make mrproper", cwd=KERNEL_SOURCE_DIR, fatal_on_error=False)

    if OUT_DIR.exists():
        log_message(f"Removing main output directory: '{OUT_DIR}'")
        shutil.rmtree(OUT_DIR, ignore_errors=True)

    log_message("Clean operation completed...")


def commit_patched_tree():
    """
    Records the patched tree in a local commit so the build sees a
    clean git state
    """
    if not (KERNEL_SOURCE_DIR / ".git").exists():
        log_message(f"'{KERNEL_SOURCE_DIR}' is not a Git repo, skipping commit")
        return

    run_cmd(f"git config user.email '{COMMIT_EMAIL}'", cwd=KERNEL_SOURCE_DIR)
    run_cmd(f"git config user.name '{COMMIT_NAME}'", cwd=KERNEL_SOURCE_DIR)
    # The build log lives in the tree but is not part of the snapshot
    log_name = build_common.BUILD_LOG_FILE.name
    run_cmd(f"git add -- . ':(exclude){log_name}'", cwd=KERNEL_SOURCE_DIR)
    # Nothing to commit on a re-run is fine
    run_cmd("git commit -m 'cleanup: applied patches before build'",
            cwd=KERNEL_SOURCE_DIR, fatal_on_error=False)


def setup_ccache() -> str:
    """
    Enables ccache if available

    Returns:
        str: Compiler command to pass as CC
    """
    if not shutil.which("ccache"):
        log_message("ccache not available, proceeding without cache")
        return "clang"

    os.environ["USE_CCACHE"] = "1"
    os.environ["CCACHE_DIR"] = str(KERNEL_SOURCE_DIR.parent / ".ccache")
    log_message(f"ccache enabled (cache dir: {os.environ['CCACHE_DIR']})")
    run_cmd("ccache --zero-stats", fatal_on_error=False)
    return "ccache clang"


def compile_kernel(checkout: Checkout, jobs: int):
    """
    Builds the kernel from the patched defconfig

    Args:
        checkout (Checkout): Patched kernel tree
        jobs (int): Number of parallel make jobs (-j)
    """
    log_message("Starting kernel compilation...")

    substitute_pattern(checkout.defconfig_path, LOCALVERSION_FROM, LOCALVERSION_TO)
    commit_patched_tree()
    compiler = setup_ccache()

    base_args = f"O={OUT_DIR} ARCH={ARCH}"
    log_message(f"Using defconfig: '{KERNEL_DEFCONFIG}' + '{DEVICE_CONFIG_FRAGMENT}'")
    run_cmd(f"make {base_args} {KERNEL_DEFCONFIG}", cwd=KERNEL_SOURCE_DIR)
    run_cmd(f"make {base_args} {DEVICE_CONFIG_FRAGMENT}", cwd=KERNEL_SOURCE_DIR)

    gcc64_prefix = GCC64_PATH / TOOLCHAIN_CONFIG["GCC64"]["cross_compile"]
    gcc32_prefix = GCC32_PATH / TOOLCHAIN_CONFIG["GCC32"]["cross_compile"]
    make_args = (
        f"{base_args} LLVM=1 LLVM_IAS=1 "
        f"LD=ld.lld AR=llvm-ar NM=llvm-nm "
        f"OBJCOPY=llvm-objcopy OBJDUMP=llvm-objdump STRIP=llvm-strip "
        f"CC='{compiler}' "
        f"CROSS_COMPILE={gcc64_prefix} "
        f"CROSS_COMPILE_COMPAT={gcc32_prefix}"
    )

    log_message(f"Building with {jobs} parallel jobs...")
    run_cmd(f"make -j{jobs} {make_args}", cwd=KERNEL_SOURCE_DIR)

    if compiler.startswith("ccache"):
        stats = run_cmd("ccache --show-stats", fatal_on_error=False)
        if stats:
            log_message(f"ccache Statistics:\n{stats.strip()}")

    log_message("Kernel compilation completed")


def main(argv: Optional[list[str]] = None):
    """
    Main entry point: parses arguments and runs the build process
    """
    parser = argparse.ArgumentParser(
        description="LineageOS perf kernel build script",
        usage="%(prog)s [options] [KSU [LN8000 [F2FS [NETHUNTER [KPROFILES]]]]]",
        epilog=(
            "Feature flags (positional, in this order, each may be omitted):\n"
            + feature_usage()
            + dedent("""

            Examples:
                ./build_kernel.py --ksu --no-ln8000 --f2fs
                    Build with KernelSU and F2FS compression

                ./build_kernel.py --clean -j8 --ksu
                    Clean, then build with KernelSU using 8 jobs

                ./build_kernel.py --skip-build --no-ksu "" "" --nethunter-full
                    Only patch the tree, with NetHunter extras
            """)
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False
    )

    # Optional clean flag
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Clean previous build artifacts before starting"
    )

    # Parallel jobs option
    default_jobs = (os.cpu_count() or 1) * 3 // 2
    parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=default_jobs,
        help=f"Number of parallel build jobs (default: {default_jobs})"
    )

    parser.add_argument(
        "--kernel-dir",
        type=Path,
        default=Path.cwd(),
        help="Kernel source tree (default: current directory)"
    )

    parser.add_argument(
        "--toolchain-dir",
        type=Path,
        default=None,
        help="Directory holding clang, gcc64 and gcc32 (default: kernel dir)"
    )

    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="Apply patches and config edits only, do not compile"
    )

    args, feature_args = parser.parse_known_args(argv)
    if args.kernel_dir.is_dir():
        build_common.BUILD_LOG_FILE = args.kernel_dir.resolve() / "kernel_build.log"

    selection = parse_selection(feature_args, parser)

    log_message("Starting kernel build process...")

    try:
        kernel_dir = args.kernel_dir.resolve()
        toolchain_dir = (args.toolchain_dir or kernel_dir).resolve()

        checkout = Checkout(kernel_dir)
        if not checkout.is_valid():
            log_message(f"[ERROR] Not a kernel tree or defconfig missing: '{kernel_dir}'")
            sys.exit(1)

        setup_environment(kernel_dir, toolchain_dir)
        if not args.skip_build:
            setup_toolchain(toolchain_dir)

        run = FeaturePipeline(checkout).run(selection)
        if not run.succeeded:
            log_message("Build process terminated due to fatal error")
            sys.exit(1)

        if args.skip_build:
            log_message("Skipping compilation (--skip-build)")
        else:
            if args.clean:
                clean_build_artifacts()
            compile_kernel(checkout, args.jobs)

    except BuildError as e:
        log_message(f"[ERROR] {e}")
        log_message("Build process terminated due to fatal error")
        sys.exit(1)

    log_message("Kernel build completed successfully.")


if __name__ == "__main__":
    main()
