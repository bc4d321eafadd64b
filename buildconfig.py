"""The build request handed to a processor and the view templates consume."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from errors import InputError
from kernelrelease import KernelRelease, parse_architecture, parse_kernel_release

DEFAULT_DRIVER_VERSION = "master"
DEFAULT_KERNEL_VERSION = "1"
DEFAULT_DRIVER_NAME = "falco"
DEFAULT_DEVICE_NAME = "falco"
DEFAULT_REPO_ORG = "falcosecurity"
DEFAULT_REPO_NAME = "libs"
DEFAULT_IMAGE_TAG = "latest"
# base64 of "no-data": tells the build scripts no kernel config was supplied.
NO_KERNEL_CONFIG = "bm8tZGF0YQ=="


@dataclass
class Build:
    """Every user input needed to build the driver for one kernel."""

    target_type: str
    kernel_release: str
    architecture: str = "amd64"
    kernel_version: str = DEFAULT_KERNEL_VERSION
    kernel_config_data: str = ""
    driver_version: str = DEFAULT_DRIVER_VERSION
    module_file_path: str = ""
    probe_file_path: str = ""
    module_driver_name: str = DEFAULT_DRIVER_NAME
    module_device_name: str = DEFAULT_DEVICE_NAME
    custom_builder_image: str = ""
    builder_repos: list[str] = field(default_factory=list)
    kernel_urls: list[str] = field(default_factory=list)
    gcc_version: str = ""
    repo_org: str = DEFAULT_REPO_ORG
    repo_name: str = DEFAULT_REPO_NAME
    proxy: str = ""

    def kernel_release_object(self) -> KernelRelease:
        """Parse the release string with this build's architecture attached."""

        return parse_kernel_release(
            self.kernel_release,
            parse_architecture(self.architecture),
            self.kernel_version,
        )

    def has_outputs(self) -> bool:
        return bool(self.module_file_path or self.probe_file_path)

    def has_custom_builder_image(self) -> bool:
        """Return ``True`` unless the image is unset or the ``auto[:tag]`` placeholder."""

        if not self.custom_builder_image:
            return False
        return self.custom_builder_image.split(":", 1)[0] != "auto"

    def builder_image_tag(self) -> str:
        """Return the catalog tag to select (``auto:<tag>`` overrides ``latest``)."""

        if self.custom_builder_image and not self.has_custom_builder_image():
            _, _, tag = self.custom_builder_image.partition(":")
            if tag:
                return tag
        return DEFAULT_IMAGE_TAG

    def kernel_config_payload(self) -> str:
        return self.kernel_config_data or NO_KERNEL_CONFIG

    def decoded_kernel_config(self) -> bytes:
        """Return the decoded kernel config (``b"no-data"`` when unset)."""

        try:
            return base64.b64decode(self.kernel_config_payload(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InputError(f"kernel config data is not valid base64: {exc}") from exc

    def to_config(self) -> "Config":
        return Config(
            driver_name=self.module_driver_name,
            device_name=self.module_device_name,
            download_base_url=f"https://github.com/{self.repo_org}/{self.repo_name}/archive",
            build=self,
        )


@dataclass(frozen=True)
class Config:
    """Identity fields the script templates need, derived from a :class:`Build`."""

    driver_name: str
    device_name: str
    download_base_url: str
    build: Build

    @property
    def driver_version(self) -> str:
        return self.build.driver_version

    @property
    def module_download_url(self) -> str:
        return f"{self.download_base_url}/{self.build.driver_version}.tar.gz"
