"""Build inside a pod of a Kubernetes cluster, driven through ``kubectl``.

The generated script, the ancillary files and two helper scripts travel in a
ConfigMap mounted read-only in the pod.  The script holds one lock file per
requested artifact and, once done, waits for the download lock so the pod
keeps running until every artifact has been streamed out with ``kubectl
exec``.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from pathlib import Path

import yaml

import ancillary
from buildconfig import Build
from errors import ArtifactError, BuildInterrupted, DriverkitError, ExecutionError
from generator import KUBERNETES_ANCILLARY_DIR, PROBE_FULL_PATH, generate_script, module_full_path
from images import ImageCatalog
from processors import (
    DEFAULT_TIMEOUT,
    LOG_TAIL_LINES,
    BuildProcessor,
    ancillary_files,
    run_binary,
    stderr_text,
    write_artifact,
)

LOG = logging.getLogger("driverkit.kubernetes_processor")

UID_LABEL = "driverkit.io/build-uid"
ARCH_LABEL = "kubernetes.io/arch"
DEFAULT_NAMESPACE = "default"
POD_POLL_INTERVAL = 2.0

BUILDER_SCRIPT = "module-builder.sh"
DOWNLOADER_SCRIPT = "module-downloader.sh"
UNLOCK_SCRIPT = "unlock.sh"

RESOURCES = {
    "requests": {"cpu": "1", "memory": "2Gi"},
    "limits": {"cpu": "4", "memory": "4Gi"},
}


class KubernetesProcessor(BuildProcessor):
    """One pod per build; artifacts come back over ``kubectl exec``."""

    name = "kubernetes"

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        run_as_user: int = 0,
        image_pull_secret: str = "",
        kubeconfig: str = "",
        kube_context: str = "",
        in_cluster: bool = False,
        catalog: ImageCatalog | None = None,
        kubectl: str = "kubectl",
        **kwargs,
    ) -> None:
        super().__init__(timeout, **kwargs)
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.run_as_user = run_as_user
        self.image_pull_secret = image_pull_secret
        self.kubeconfig = "" if in_cluster else kubeconfig
        self.kube_context = "" if in_cluster else kube_context
        self.catalog = catalog
        self.kubectl = kubectl
        if in_cluster:
            self.name = "kubernetes-in-cluster"

    def kubectl_command(self, *args: str) -> list[str]:
        """Return a kubectl invocation bound to the configured cluster and namespace."""

        command = [self.kubectl]
        if self.kubeconfig:
            command.extend(["--kubeconfig", self.kubeconfig])
        if self.kube_context:
            command.extend(["--context", self.kube_context])
        command.extend(["--namespace", self.namespace])
        command.extend(args)
        return command

    def start(self, build: Build) -> None:
        generated = generate_script(build, self.catalog, ancillary_dir=KUBERNETES_ANCILLARY_DIR, context=self.context)
        uid = str(uuid.uuid4())
        name = f"driverkit-{uid}"

        downloads = self._downloads(build)
        script = ancillary.add_artifact_locks(generated.script, [lock for _, _, lock in downloads])

        configmap = self.configmap_manifest(name, uid, build, script)
        pod = self.pod_manifest(name, uid, generated.image, build.kernel_release_object().architecture.name)

        cleanup = self._cleaner(name)
        self.context.add_cleanup(f"delete pod and configmap {name}", cleanup)
        try:
            self._apply(configmap, "configmap")
            self._apply(pod, "pod")
            LOG.info("Started pod %s in namespace %s", name, self.namespace)
            pod_name = self._wait_running(uid)
            for source, destination, lock in downloads:
                self._download(pod_name, source, destination, lock)
            self._exec(pod_name, [f"{KUBERNETES_ANCILLARY_DIR}/{UNLOCK_SCRIPT}"])
            LOG.info("Completed downloading from pod %s", pod_name)
        finally:
            cleanup()

    def configmap_manifest(self, name: str, uid: str, build: Build, script: str) -> dict:
        data = {
            BUILDER_SCRIPT: script,
            DOWNLOADER_SCRIPT: ancillary.DOWNLOADER_SCRIPT,
            UNLOCK_SCRIPT: ancillary.RELEASE_DOWNLOAD_LOCK,
        }
        for key, content in ancillary_files(build).items():
            data[key] = content.decode("utf-8", errors="replace")
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._metadata(name, uid),
            "data": data,
        }

    def pod_manifest(self, name: str, uid: str, image: str, architecture: str) -> dict:
        """Return the pod running the build script from the mounted ConfigMap."""

        container = {
            "name": name,
            "image": image,
            "imagePullPolicy": "IfNotPresent",
            "command": ["/bin/bash", f"{KUBERNETES_ANCILLARY_DIR}/{BUILDER_SCRIPT}"],
            "resources": RESOURCES,
            "volumeMounts": [{"name": "module-builder", "mountPath": KUBERNETES_ANCILLARY_DIR, "readOnly": True}],
        }
        env = [{"name": key, "value": value} for key, value in self.proxy_env().items()]
        if env:
            container["env"] = env

        spec = {
            "activeDeadlineSeconds": int(self.timeout),
            "restartPolicy": "Never",
            "securityContext": {"runAsUser": int(self.run_as_user)},
            "nodeSelector": {ARCH_LABEL: architecture},
            "containers": [container],
            "volumes": [{"name": "module-builder", "configMap": {"name": name}}],
        }
        if self.image_pull_secret:
            spec["imagePullSecrets"] = [{"name": self.image_pull_secret}]
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": self._metadata(name, uid),
            "spec": spec,
        }

    def _metadata(self, name: str, uid: str) -> dict:
        return {"name": name, "namespace": self.namespace, "labels": {UID_LABEL: uid}}

    def _apply(self, manifest: dict, kind: str) -> None:
        document = yaml.safe_dump(manifest, default_flow_style=False, sort_keys=False)
        LOG.debug("Creating %s:\n%s", kind, document)
        try:
            run_binary(self.kubectl_command("create", "-f", "-"), input_bytes=document.encode(), context=self.context)
        except subprocess.CalledProcessError as exc:
            raise DriverkitError(f"unable to create {kind}: {stderr_text(exc)}") from exc

    def _cleaner(self, name: str):
        done = []

        def cleanup() -> None:
            if done:
                return
            done.append(name)
            for kind in ("pod", "configmap"):
                command = self.kubectl_command("delete", kind, name, "--ignore-not-found", "--wait=false")
                LOG.debug("$ %s", " ".join(command))
                try:
                    subprocess.run(command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, check=True)
                except subprocess.CalledProcessError as exc:
                    LOG.warning("Unable to delete %s %s: %s", kind, name, stderr_text(exc))

        return cleanup

    def _pod_status(self, uid: str) -> tuple[str, str]:
        output = run_binary(
            self.kubectl_command(
                "get",
                "pods",
                "-l",
                f"{UID_LABEL}={uid}",
                "-o",
                "jsonpath={.items[0].metadata.name} {.items[0].status.phase}",
            ),
            context=self.context,
        )
        name, _, phase = output.decode().strip().partition(" ")
        return name, phase.strip()

    def _wait_running(self, uid: str) -> str:
        """Poll the pod labelled with *uid* until it runs; return its name."""

        last_phase = ""
        while True:
            try:
                pod_name, phase = self._pod_status(uid)
            except subprocess.CalledProcessError as exc:
                LOG.debug("Pod for build %s not listed yet: %s", uid, stderr_text(exc))
                pod_name, phase = "", ""
            if phase != last_phase:
                LOG.info("Pod %s is %s", pod_name or uid, phase or "not scheduled")
                last_phase = phase
            if phase == "Running":
                return pod_name
            if phase == "Failed":
                raise ExecutionError(f"pod {pod_name} failed", self._logs_tail(pod_name))
            if phase == "Succeeded":
                raise ArtifactError(f"pod {pod_name} exited before its artifacts were downloaded")
            if self.context.sleep(POD_POLL_INTERVAL):
                raise BuildInterrupted(self.context.reason)

    def _logs_tail(self, pod_name: str) -> list[str]:
        try:
            output = run_binary(self.kubectl_command("logs", pod_name, f"--tail={LOG_TAIL_LINES}"))
        except subprocess.CalledProcessError as exc:
            LOG.warning("Unable to read the logs of pod %s: %s", pod_name, stderr_text(exc))
            return []
        return output.decode("utf-8", errors="replace").splitlines()

    def _downloads(self, build: Build) -> list[tuple[str, str, str]]:
        """Return ``(pod path, host path, lock file)`` for each requested artifact."""

        downloads = []
        if build.module_file_path:
            source = module_full_path(build.module_driver_name)
            downloads.append((source, build.module_file_path, ancillary.MODULE_LOCK_FILE))
        if build.probe_file_path:
            downloads.append((PROBE_FULL_PATH, build.probe_file_path, ancillary.PROBE_LOCK_FILE))
        return downloads

    def _exec(self, pod_name: str, args: list[str]) -> bytes:
        command = self.kubectl_command("exec", pod_name, "--", "/bin/bash", *args)
        return run_binary(command, context=self.context)

    def _download(self, pod_name: str, source: str, destination: str, lock: str) -> None:
        LOG.info("Waiting for %s in pod %s", source, pod_name)
        try:
            content = self._exec(pod_name, [f"{KUBERNETES_ANCILLARY_DIR}/{DOWNLOADER_SCRIPT}", source, lock])
        except subprocess.CalledProcessError as exc:
            if self.context.cancelled:
                raise BuildInterrupted(self.context.reason) from exc
            raise ExecutionError(
                f"unable to download {source} from pod {pod_name}: {stderr_text(exc)}",
                self._logs_tail(pod_name),
            ) from exc
        if not content:
            raise ArtifactError(f"build succeeded but artifact {source} not produced")
        write_artifact(Path(destination), content)
        LOG.info("Downloaded %s to %s", source, destination)
