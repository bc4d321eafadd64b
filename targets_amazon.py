"""Amazon Linux targets.

Amazon does not publish a browsable package pool, so the kernel-devel
package is looked up in the yum metadata itself: each repository's
``mirror.list`` points at a mirror whose ``repodata/primary.sqlite`` database
lists every package location.
"""

from __future__ import annotations

import bz2
import contextlib
import gzip
import logging
import os
import sqlite3
import tempfile

from buildconfig import Config
from errors import HeadersNotFoundError
from kernelrelease import KernelRelease
from resolver import fetch_bytes, fetch_text
from targets import RpmTarget

LOG = logging.getLogger("driverkit.targets_amazon")

DECOMPRESSORS = {
    "gz": gzip.decompress,
    "bz2": bz2.decompress,
}

KERNEL_DEVEL_QUERY = (
    "SELECT location_href FROM packages WHERE name LIKE 'kernel-devel%' AND version = ? AND release = ?"
)


def query_primary_db(db_bytes: bytes, version: str, release: str, *, prefix: str = "driverkit") -> list[str]:
    """Return the ``location_href`` of every kernel-devel package matching *version*-*release*."""

    fd, path = tempfile.mkstemp(prefix=f"{prefix}-", suffix=".sqlite")
    try:
        with os.fdopen(fd, "wb") as file_obj:
            file_obj.write(db_bytes)
        LOG.debug("Querying package database %s", path)
        with contextlib.closing(sqlite3.connect(path)) as connection:
            rows = connection.execute(KERNEL_DEVEL_QUERY, (version, release)).fetchall()
    finally:
        os.unlink(path)
    return [row[0] for row in rows]


class AmazonLinux(RpmTarget):
    name = "amazonlinux"
    base_url = "http://repo.us-east-1.amazonaws.com"
    extension = "bz2"
    repos: tuple[str, ...] = (
        "latest/updates",
        "latest/main",
        "2017.03/updates",
        "2017.03/main",
        "2017.09/updates",
        "2017.09/main",
        "2018.03/updates",
        "2018.03/main",
    )

    def mirror_list_url(self, repo: str, kr: KernelRelease) -> str:
        return f"{self.base_url}/{repo}/mirror.list"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        arch = kr.architecture.to_non_deb()
        release = kr.fullextraversion
        if release.endswith(f".{arch}"):
            release = release[: -len(arch) - 1]
        release = release.lstrip("-")

        visited: set[str] = set()
        for repo in self.repos:
            try:
                urls = self.repo_urls(repo, kr, release, visited)
            except (HeadersNotFoundError, OSError, EOFError, sqlite3.DatabaseError) as exc:
                LOG.debug("Skipping repository %s: %s", repo, exc)
                continue
            if urls:
                return urls
        return []

    def repo_urls(self, repo: str, kr: KernelRelease, release: str, visited: set[str]) -> list[str]:
        """Return the kernel-devel packages of *kr* published in *repo*."""

        arch = kr.architecture.to_non_deb()
        mirror_list = self.mirror_list_url(repo, kr)
        LOG.debug("Looking for repository %s at %s", repo, mirror_list)
        lines = fetch_text(mirror_list).splitlines()
        mirror = lines[0].strip() if lines else ""
        if not mirror:
            raise HeadersNotFoundError(f"repository not found: {mirror_list}")
        mirror = mirror.replace("$basearch", arch).rstrip("/")

        database_url = f"{mirror}/repodata/primary.sqlite.{self.extension}"
        if database_url in visited:
            return []
        visited.add(database_url)

        LOG.debug("Downloading %s", database_url)
        db_bytes = DECOMPRESSORS[self.extension](fetch_bytes(database_url))
        hrefs = query_primary_db(db_bytes, kr.fullversion, release, prefix=self.name)
        return [f"{mirror}/{href}" for href in hrefs]


class AmazonLinux2(AmazonLinux):
    name = "amazonlinux2"
    base_url = "http://amazonlinux.us-east-1.amazonaws.com/2"
    extension = "gz"
    repos = (
        "core/2.0",
        "core/latest",
        "extras/kernel-5.4/latest",
        "extras/kernel-5.10/latest",
        "extras/kernel-5.15/latest",
    )

    def mirror_list_url(self, repo: str, kr: KernelRelease) -> str:
        return f"{self.base_url}/{repo}/{kr.architecture.to_non_deb()}/mirror.list"


class AmazonLinux2022(AmazonLinux2):
    name = "amazonlinux2022"
    base_url = "https://al2022-repos-us-east-1-9761ab97.s3.dualstack.us-east-1.amazonaws.com/core/mirrors"
    repos = (
        "2022.0.20220202",
        "2022.0.20220315",
    )


class AmazonLinux2023(AmazonLinux2):
    name = "amazonlinux2023"
    base_url = "https://cdn.amazonlinux.com/al2023/core/mirrors"
    repos = ("latest",)


AMAZON_TARGETS = (AmazonLinux(), AmazonLinux2(), AmazonLinux2022(), AmazonLinux2023())
