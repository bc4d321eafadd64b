#!/usr/bin/env python3
"""Command line entry point of driverkit.

driverkit builds the kernel module and/or the eBPF probe of a driver for a
given kernel.  Each build environment is exposed as a sub-command:

* ``docker``: build inside a container of the local docker daemon.
* ``kubernetes`` (``k8s``): build inside a pod of a Kubernetes cluster.
* ``kubernetes-in-cluster`` (``k8s-ic``): same, authenticating with the
  service account of the pod driverkit runs in.
* ``local``: build on the current host.
* ``images``: list the builder images of the catalog.
* ``completion``: print a shell completion script.

Every option can also come from a ``DRIVERKIT_<NAME>`` environment variable or
from the YAML config file (``~/.driverkit.yaml`` unless ``--config`` says
otherwise).  The command line wins over the environment, which wins over the
file.
"""

from __future__ import annotations

import argparse
import logging
import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

import generator
from buildconfig import (
    DEFAULT_DEVICE_NAME,
    DEFAULT_DRIVER_NAME,
    DEFAULT_DRIVER_VERSION,
    DEFAULT_KERNEL_VERSION,
    DEFAULT_REPO_NAME,
    DEFAULT_REPO_ORG,
    Build,
)
from cancellation import BuildContext, signal_context
from completion import SHELLS, completion_script
from docker_processor import DockerProcessor
from errors import DriverkitError, InputError
from images import ImageCatalog, normalize_gcc
from kernelrelease import host_architecture, parse_architecture
from kubernetes_processor import DEFAULT_NAMESPACE, KubernetesProcessor
from local_processor import LocalProcessor
from processors import DEFAULT_TIMEOUT, MIN_TIMEOUT, BuildProcessor
from registry import get_target, target_names

LOG = logging.getLogger("driverkit.cli")

ENV_PREFIX = "DRIVERKIT_"
DEFAULT_CONFIG_FILE = "~/.driverkit.yaml"
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
TRUE_VALUES = {"1", "true", "yes", "on"}

# Targets whose headers are configured from the user's kernel config.
KERNEL_CONFIG_TARGETS = {"vanilla", "minikube", "flatcar"}
# Targets whose headers only exist inside a user supplied builder image.
BUILDER_IMAGE_TARGETS = {"redhat", "linuxkit"}


@dataclass(frozen=True)
class Option:
    """A setting that can come from a flag, the environment or the config file."""

    flags: tuple[str, ...]
    help: str
    default: Any = None
    kind: str = "str"
    choices: tuple[str, ...] | None = None

    @property
    def key(self) -> str:
        """Return the long flag without dashes: the config file key."""

        return self.flags[0].lstrip("-")

    @property
    def dest(self) -> str:
        return self.key.replace("-", "_")

    @property
    def env_name(self) -> str:
        return ENV_PREFIX + self.dest.upper()


ROOT_OPTIONS = (
    Option(("--output-module", "--output"), "filepath where to save the resulting kernel module"),
    Option(("--output-probe",), "filepath where to save the resulting eBPF probe"),
    Option(("--driverversion", "--moduleversion"), "driver version as a git ref", DEFAULT_DRIVER_VERSION),
    Option(("--kernelversion",), "kernel version to build the module for", DEFAULT_KERNEL_VERSION),
    Option(("--kernelrelease",), "kernel release to build the module for, e.g. 4.15.0-1057-aws"),
    Option(("--target", "-t"), "the system to target the build for"),
    Option(("--kernelconfigdata",), "base64 encoded kernel config data"),
    Option(("--architecture",), "target architecture", host_architecture().name, choices=("amd64", "arm64")),
    Option(("--gccversion",), "enforce a specific gcc version for the build"),
    Option(("--kernelurls",), "list of kernel header urls", [], kind="list"),
    Option(("--builderimage",), "docker image to be used to build the kernel module and eBPF probe"),
    Option(("--builderrepo",), "YAML builder image catalogs, first match wins", [], kind="list"),
    Option(("--moduledrivername",), "kernel module driver name", DEFAULT_DRIVER_NAME),
    Option(("--moduledevicename",), "kernel module device name", DEFAULT_DEVICE_NAME),
    Option(("--repo-org",), "repository github organization", DEFAULT_REPO_ORG),
    Option(("--repo-name",), "repository github name", DEFAULT_REPO_NAME),
    Option(("--proxy",), "the proxy to use to download data"),
    Option(("--timeout",), "timeout in seconds", DEFAULT_TIMEOUT, kind="int"),
    Option(("--loglevel", "-l"), "log level", "info", choices=tuple(LOG_LEVELS)),
    Option(("--logfile",), "also write the log to this file"),
    Option(("--dryrun",), "do not actually perform the action", False, kind="bool"),
)

KUBERNETES_OPTIONS = (
    Option(("--namespace", "-n"), "If present, the namespace scope for the pods and configmaps", DEFAULT_NAMESPACE),
    Option(("--run-as-user",), "pods run as user", 0, kind="int"),
    Option(("--image-pull-secret",), "ImagePullSecret for the builder pod"),
    Option(("--kubeconfig",), "path to the kubeconfig file to use"),
    Option(("--context",), "name of the kubeconfig context to use"),
)

LOCAL_OPTIONS = (
    Option(("--dkms",), "enforce usage of DKMS to build the kernel module", False, kind="bool"),
    Option(("--download-headers",), "try to automatically download kernel headers", False, kind="bool"),
    Option(("--src-dir",), "use a driver source tree already present on this host"),
    Option(("--env",), "env variables to be enforced during the build, as KEY=VALUE", [], kind="list"),
)


def setup_logging(level: str = "info", log_file: str | Path | None = None) -> None:
    """Route every ``driverkit.*`` logger to the console and, optionally, *log_file*."""

    root = logging.getLogger("driverkit")
    numeric_level = LOG_LEVELS.get(str(level).lower(), logging.INFO)
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.propagate = False

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(numeric_level)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(numeric_level)
        root.addHandler(file_handler)


def _add_options(parser: argparse.ArgumentParser, options: tuple[Option, ...]) -> None:
    for option in options:
        kwargs: dict[str, Any] = {"dest": option.dest, "default": argparse.SUPPRESS, "help": option.help}
        if option.kind == "bool":
            kwargs["action"] = "store_true"
        elif option.kind == "list":
            kwargs["action"] = "append"
        else:
            if option.kind == "int":
                kwargs["type"] = int
            if option.choices:
                kwargs["choices"] = option.choices
        parser.add_argument(*option.flags, **kwargs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="driverkit",
        description="Build kernel modules and eBPF probes for a given kernel",
    )
    parser.add_argument("--config", "-c", default=argparse.SUPPRESS, help="config file path")
    _add_options(parser, ROOT_OPTIONS)

    common = argparse.ArgumentParser(add_help=False)
    _add_options(common, ROOT_OPTIONS)

    subparsers = parser.add_subparsers(dest="command", required=True)

    docker_parser = subparsers.add_parser("docker", parents=[common], help="Build using the docker daemon")
    docker_parser.set_defaults(func=run_build)

    k8s_parser = subparsers.add_parser(
        "kubernetes", aliases=["k8s"], parents=[common], help="Build using a Kubernetes cluster"
    )
    _add_options(k8s_parser, KUBERNETES_OPTIONS)
    k8s_parser.set_defaults(func=run_build, command="kubernetes")

    k8s_ic_parser = subparsers.add_parser(
        "kubernetes-in-cluster",
        aliases=["k8s-ic"],
        parents=[common],
        help="Build using the Kubernetes cluster driverkit runs in",
    )
    _add_options(k8s_ic_parser, KUBERNETES_OPTIONS)
    k8s_ic_parser.set_defaults(func=run_build, command="kubernetes-in-cluster")

    local_parser = subparsers.add_parser("local", parents=[common], help="Build on the current host")
    _add_options(local_parser, LOCAL_OPTIONS)
    local_parser.set_defaults(func=run_build)

    images_parser = subparsers.add_parser("images", parents=[common], help="List the builder images")
    images_parser.set_defaults(func=list_images)

    completion_parser = subparsers.add_parser("completion", help="Print a shell completion script")
    completion_parser.add_argument("shell", choices=SHELLS)
    completion_parser.set_defaults(func=print_completion)

    return parser


def load_config_file(path: str | Path, *, required: bool) -> dict[str, Any]:
    """Return the flattened settings of the YAML config file at *path*.

    Nested mappings are joined with dashes, so ``output: {module: x}`` is the
    same as ``output-module: x``.
    """

    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if required:
            raise InputError(f"config file not found: {path}") from None
        return {}
    except OSError as exc:
        raise InputError(f"unable to read config file {path}: {exc}") from exc
    try:
        document = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise InputError(f"invalid config file {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise InputError(f"invalid config file {path}: expected a mapping")
    LOG.debug("Using config file %s", path)
    return _flatten(document)


def _flatten(document: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in document.items():
        name = f"{prefix}{str(key).replace('_', '-')}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{name}-"))
        else:
            flat[name] = value
    return flat


def _convert(option: Option, value: Any, source: str) -> Any:
    """Coerce *value* read from *source* to the type of *option*."""

    if option.kind == "bool":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in TRUE_VALUES
    if option.kind == "int":
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InputError(f"{source}: {option.key} must be an integer, got {value!r}") from None
    if option.kind == "list":
        if isinstance(value, (list, tuple)):
            items = [str(item) for item in value]
        else:
            items = [str(value)]
        return [part.strip() for item in items for part in item.split(",") if part.strip()]
    value = "" if value is None else str(value)
    if option.choices and value and value not in option.choices:
        raise InputError(f"{source}: invalid {option.key} {value!r} (choose from {', '.join(option.choices)})")
    return value


def resolve_options(
    args: argparse.Namespace,
    options: tuple[Option, ...],
    file_values: dict[str, Any],
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Return the value of every option: flag, then environment, then file, then default."""

    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for option in options:
        if hasattr(args, option.dest):
            values[option.dest] = _convert(option, getattr(args, option.dest), "command line")
        elif option.env_name in environ:
            values[option.dest] = _convert(option, environ[option.env_name], option.env_name)
        elif option.key in file_values:
            values[option.dest] = _convert(option, file_values[option.key], "config file")
        else:
            default = option.default
            values[option.dest] = list(default) if isinstance(default, list) else default
        if values[option.dest] is None:
            values[option.dest] = ""
    return values


def command_options(command: str) -> tuple[Option, ...]:
    if command in ("kubernetes", "kubernetes-in-cluster"):
        return ROOT_OPTIONS + KUBERNETES_OPTIONS
    if command == "local":
        return ROOT_OPTIONS + LOCAL_OPTIONS
    return ROOT_OPTIONS


def parse_env_overlay(entries: list[str]) -> dict[str, str]:
    overlay = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise InputError(f"invalid env entry {entry!r}: expected KEY=VALUE")
        overlay[key] = value
    return overlay


def build_from_options(values: dict[str, Any]) -> Build:
    return Build(
        target_type=values["target"],
        kernel_release=values["kernelrelease"],
        architecture=values["architecture"],
        kernel_version=values["kernelversion"] or DEFAULT_KERNEL_VERSION,
        kernel_config_data=values["kernelconfigdata"],
        driver_version=values["driverversion"] or DEFAULT_DRIVER_VERSION,
        module_file_path=values["output_module"],
        probe_file_path=values["output_probe"],
        module_driver_name=values["moduledrivername"] or DEFAULT_DRIVER_NAME,
        module_device_name=values["moduledevicename"] or DEFAULT_DEVICE_NAME,
        custom_builder_image=values["builderimage"],
        builder_repos=values["builderrepo"],
        kernel_urls=values["kernelurls"],
        gcc_version=values["gccversion"],
        repo_org=values["repo_org"] or DEFAULT_REPO_ORG,
        repo_name=values["repo_name"] or DEFAULT_REPO_NAME,
        proxy=values["proxy"],
    )


def validate(values: dict[str, Any], build: Build, command: str) -> None:
    """Reject a build before any network or subprocess work starts."""

    if values["timeout"] < MIN_TIMEOUT:
        raise InputError(f"timeout must be at least {MIN_TIMEOUT} seconds")
    parse_architecture(build.architecture)
    if command != "local" or values["download_headers"]:
        if not build.target_type:
            raise InputError("target is required")
        target = get_target(build.target_type)
        if target.name in KERNEL_CONFIG_TARGETS and not build.kernel_config_data:
            raise InputError(f"target {target.name} requires --kernelconfigdata")
        if target.name == "ubuntu" and not values["kernelversion"]:
            raise InputError("target ubuntu requires --kernelversion")
        if target.name in BUILDER_IMAGE_TARGETS and not build.has_custom_builder_image():
            raise InputError(f"target {target.name} requires --builderimage")
    if not build.kernel_release:
        raise InputError("kernel release is required")
    if not build.has_outputs():
        raise InputError("at least one of --output-module or --output-probe is required")
    if build.gcc_version:
        normalize_gcc(build.gcc_version)
    build.decoded_kernel_config()
    generator.check_support(build, build.kernel_release_object())


def log_build_summary(command: str, build: Build) -> None:
    LOG.info("Build environment: %s", command)
    LOG.info("Target: %s, kernel release: %s (%s)", build.target_type or "local", build.kernel_release, build.architecture)
    LOG.info("Driver: %s %s", build.module_driver_name, build.driver_version)
    if build.module_file_path:
        LOG.info("Kernel module: %s", build.module_file_path)
    if build.probe_file_path:
        LOG.info("eBPF probe: %s", build.probe_file_path)


def make_processor(command: str, values: dict[str, Any], context: BuildContext) -> BuildProcessor:
    common = {"proxy": values["proxy"], "context": context}
    if command == "docker":
        return DockerProcessor(values["timeout"], **common)
    if command in ("kubernetes", "kubernetes-in-cluster"):
        return KubernetesProcessor(
            values["timeout"],
            namespace=values["namespace"],
            run_as_user=values["run_as_user"],
            image_pull_secret=values["image_pull_secret"],
            kubeconfig=values["kubeconfig"],
            kube_context=values["context"],
            in_cluster=command == "kubernetes-in-cluster",
            **common,
        )
    if command == "local":
        return LocalProcessor(
            values["timeout"],
            use_dkms=values["dkms"],
            download_headers=values["download_headers"],
            src_dir=values["src_dir"],
            env=parse_env_overlay(values["env"]),
            **common,
        )
    raise InputError(f"unknown build environment: {command}")


def run_build(args: argparse.Namespace, values: dict[str, Any]) -> None:
    if args.command == "local" and not values["kernelrelease"]:
        values["kernelrelease"] = platform.release()
    build = build_from_options(values)
    validate(values, build, args.command)
    log_build_summary(args.command, build)

    if values["dryrun"]:
        if args.command == "local":
            LOG.info("Dry run: skipping the local build")
            return
        ancillary_dir = generator.DOCKER_ANCILLARY_DIR
        if args.command != "docker":
            ancillary_dir = generator.KUBERNETES_ANCILLARY_DIR
        generated = generator.generate_script(build, ancillary_dir=ancillary_dir)
        LOG.info("Dry run: builder image %s (gcc %s)", generated.image, generated.gcc_version)
        print(generated.script)
        return

    if build.proxy:
        os.environ["http_proxy"] = build.proxy
        os.environ["https_proxy"] = build.proxy

    with signal_context(values["timeout"]) as context:
        processor = make_processor(args.command, values, context)
        LOG.info("Starting %s build", processor)
        processor.start(build)
    LOG.info("Build completed")


def list_images(args: argparse.Namespace, values: dict[str, Any]) -> None:
    architecture = parse_architecture(values["architecture"])
    build = build_from_options(values)
    catalog = ImageCatalog.load(
        values["builderrepo"],
        arch=architecture.to_non_deb(),
        target_names=target_names(),
        tag=build.builder_image_tag(),
    )
    rows = [(image.target, image.gcc_version, image.name) for image in catalog]
    if not rows:
        LOG.warning("No builder images found")
        return
    widths = [max(len(row[index]) for row in [("TARGET", "GCC", "IMAGE"), *rows]) for index in range(3)]
    for row in [("TARGET", "GCC", "IMAGE"), *rows]:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def print_completion(args: argparse.Namespace, _: dict[str, Any]) -> None:
    print(completion_script(build_parser(), args.shell), end="")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config_path = getattr(args, "config", None) or os.environ.get(f"{ENV_PREFIX}CONFIG")
        file_values = load_config_file(config_path or DEFAULT_CONFIG_FILE, required=bool(config_path))
        values = resolve_options(args, command_options(args.command), file_values)
    except DriverkitError as exc:
        setup_logging()
        LOG.error("%s", exc)
        return 1

    setup_logging(values["loglevel"], values["logfile"] or None)
    try:
        args.func(args, values)
    except RuntimeError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    sys.exit(main())
