"""
Resilient fetching of toolchains, patches and source repositories

A logical artifact is described by an ordered list of candidate
locations. Candidates are tried in order and the first one that
downloads and verifies wins.
"""
import json
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from build_common import FetchFailed, log_message, run_cmd

GITHUB_API = "https://api.github.com/repos"


@dataclass(frozen=True)
class Candidate:
    """
    One location an artifact can be fetched from

    download_type is "download_url" for a single file, or "git" for a
    repository clone. verify is a path relative to the destination that
    must exist once the fetch finished.
    """
    url: str
    download_type: str = "download_url"
    branch: Optional[str] = None
    depth: Optional[int] = None
    verify: Optional[str] = None

    def describe(self) -> str:
        if self.branch:
            return f"{self.url} (branch: {self.branch})"
        return self.url


def download_command(url: str, dest: Path) -> str:
    # Choose available downloader
    if shutil.which("wget"):
        return f"wget -q -L -O '{dest}' '{url}'"
    if shutil.which("curl"):
        return f"curl -s -f -L -o '{dest}' '{url}'"
    raise FetchFailed(dest.name, ["wget or curl not found"])


def clone_command(candidate: Candidate, dest: Path) -> str:
    depth_arg = f"--depth={candidate.depth} " if candidate.depth else ""
    branch_arg = f"-b {candidate.branch} " if candidate.branch else ""
    return f"git clone {depth_arg}{branch_arg}'{candidate.url}' '{dest}'"


def remove_partial(dest: Path):
    if dest.is_dir() and not dest.is_symlink():
        shutil.rmtree(dest, ignore_errors=True)
    elif dest.exists() or dest.is_symlink():
        dest.unlink()


def is_verified(candidate: Candidate, dest: Path) -> bool:
    if candidate.download_type == "download_url":
        if not dest.is_file() or dest.stat().st_size == 0:
            return False
    elif not dest.is_dir():
        return False

    if candidate.verify and not (dest / candidate.verify).exists():
        log_message(f"WARNING: '{candidate.verify}' not found after fetching "
                    f"'{candidate.describe()}'")
        return False
    return True


def fetch(name: str, candidates: list[Candidate], dest: Path) -> Path:
    """
    Fetches an artifact from the first working candidate

    Args:
        name (str): Artifact name used in log messages
        candidates (list[Candidate]): Locations to try, in order
        dest (Path): File or directory to create

    Returns:
        Path: dest, once verified

    Raises:
        FetchFailed: If every candidate failed
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    attempts = []

    for index, candidate in enumerate(candidates, start=1):
        log_message(f"Fetching '{name}', source {index}/{len(candidates)}: "
                    f"{candidate.describe()}")
        attempts.append(candidate.describe())
        remove_partial(dest)

        if candidate.download_type == "git":
            command = clone_command(candidate, dest)
        elif candidate.download_type == "download_url":
            command = download_command(candidate.url, dest)
        else:
            log_message(f"[ERROR] Unknown download_type '{candidate.download_type}'")
            continue

        if run_cmd(command, fatal_on_error=False) is not None \
                and is_verified(candidate, dest):
            log_message(f"Fetched '{name}' from {candidate.describe()}")
            return dest

        log_message(f"WARNING: Source {index} for '{name}' failed, trying next source...")
        remove_partial(dest)

    log_message(f"[ERROR] All sources for '{name}' failed")
    raise FetchFailed(name, attempts)


def latest_release_assets(repo: str, pattern: str) -> list[str]:
    """
    Lists download URLs of the latest GitHub release of a repository

    Args:
        repo (str): "owner/name"
        pattern (str): Regular expression the asset URL must match

    Returns:
        list[str]: Matching browser_download_url values
    """
    api_url = f"{GITHUB_API}/{repo}/releases/latest"
    output = run_cmd(f"curl -s -f -L '{api_url}'", fatal_on_error=False)
    if output is None:
        raise FetchFailed(f"{repo} release list", [api_url])

    try:
        release = json.loads(output)
    except json.JSONDecodeError as e:
        log_message(f"[ERROR] Invalid release metadata from {api_url}: {e}")
        raise FetchFailed(f"{repo} release list", [api_url]) from e

    regex = re.compile(pattern)
    return [
        asset["browser_download_url"]
        for asset in release.get("assets", [])
        if regex.search(asset.get("browser_download_url", ""))
    ]
