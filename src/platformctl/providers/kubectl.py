"""kubectl provider: the cluster control-plane client."""
from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from ..process import Command, CommandError, CommandResult, CommandRunner


class KubectlError(RuntimeError):
    """Raised when kubectl operations fail."""


@dataclass(slots=True)
class KubectlProvider:
    """Query and mutate a cluster through ``kubectl``."""

    runner: CommandRunner
    kubeconfig: Path | None = None
    kubectl_bin: str = "kubectl"
    timeout: float | None = 60.0

    def with_kubeconfig(self, kubeconfig: Path | None) -> KubectlProvider:
        """Return a copy bound to *kubeconfig*."""
        return replace(self, kubeconfig=kubeconfig)

    @property
    def configured(self) -> bool:
        """Return ``True`` when a kubeconfig file is available."""
        return self.kubeconfig is not None and self.kubeconfig.is_file()

    def cluster_reachable(self) -> bool:
        """Return ``True`` when the control plane answers ``cluster-info``."""
        if self.kubeconfig is not None and not self.kubeconfig.is_file():
            return False
        try:
            result = self._kubectl(("cluster-info",), check=False)
        except KubectlError:
            return False
        return result.ok

    def get(
        self,
        kind: str,
        name: str | None = None,
        *,
        namespace: str | None = None,
        selector: str | None = None,
        all_namespaces: bool = False,
    ) -> dict[str, object]:
        """Return the parsed JSON for ``kubectl get``."""
        args = ["get", kind]
        if name:
            args.append(name)
        args.extend(self._scope(namespace, all_namespaces))
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", "json"])
        result = self._kubectl(args)
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise KubectlError(f"kubectl get {kind} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise KubectlError(f"kubectl get {kind} returned an unexpected payload.")
        return payload

    def items(
        self,
        kind: str,
        *,
        namespace: str | None = None,
        selector: str | None = None,
        all_namespaces: bool = False,
    ) -> list[dict[str, object]]:
        """Return the ``items`` list for *kind*."""
        payload = self.get(
            kind, namespace=namespace, selector=selector, all_namespaces=all_namespaces
        )
        items = payload.get("items", [])
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def names(self, kind: str, *, namespace: str | None = None) -> list[str]:
        """Return ``metadata.name`` for every object of *kind*."""
        names: list[str] = []
        for item in self.items(kind, namespace=namespace):
            metadata = item.get("metadata")
            if isinstance(metadata, Mapping) and metadata.get("name"):
                names.append(str(metadata["name"]))
        return names

    def exists(self, kind: str, name: str, *, namespace: str | None = None) -> bool:
        """Return ``True`` when the named object exists."""
        args = ["get", kind, name, *self._scope(namespace, False), "-o", "name"]
        result = self._kubectl(args, check=False)
        if result.ok:
            return True
        if "notfound" in result.message().lower().replace(" ", ""):
            return False
        raise KubectlError(
            f"kubectl get {kind} {name} failed (exit {result.returncode}): {result.message()}"
        )

    def cordon(self, node: str) -> CommandResult:
        """Mark *node* unschedulable."""
        return self._kubectl(("cordon", node))

    def delete(
        self,
        kind: str,
        names: Sequence[str] = (),
        *,
        namespace: str | None = None,
        grace_period: int | None = None,
        all_objects: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Delete objects; missing objects are not an error."""
        args = ["delete", kind, *names]
        if all_objects:
            args.append("--all")
        args.extend(self._scope(namespace, False))
        args.append("--ignore-not-found")
        if grace_period is not None:
            args.append(f"--grace-period={grace_period}")
        if timeout is not None:
            args.append(f"--timeout={int(timeout)}s")
        return self._kubectl(args, timeout=(timeout + 30) if timeout else None)

    def wait(
        self,
        target: str,
        *,
        condition: str,
        namespace: str | None = None,
        timeout: float,
        all_objects: bool = False,
    ) -> bool:
        """Block until *condition* holds; return ``False`` on expiry."""
        args = ["wait", target, f"--for={condition}", f"--timeout={int(timeout)}s"]
        if all_objects:
            args.append("--all")
        args.extend(self._scope(namespace, False))
        result = self._kubectl(args, check=False, timeout=timeout + 30)
        return result.ok

    def apply_manifest(self, document: Mapping[str, object] | str) -> CommandResult:
        """Apply a manifest passed on stdin."""
        text = document if isinstance(document, str) else json.dumps(dict(document))
        return self._kubectl(("apply", "-f", "-"), input=text)

    def top_nodes(self) -> str:
        """Return ``kubectl top nodes`` output."""
        return self._kubectl(("top", "nodes", "--no-headers")).stdout

    def secret_values(self, name: str, *, namespace: str) -> dict[str, str]:
        """Return the decoded data of secret *name*."""
        payload = self.get("secret", name, namespace=namespace)
        data = payload.get("data") or {}
        decoded: dict[str, str] = {}
        if isinstance(data, Mapping):
            for key, value in data.items():
                try:
                    decoded[str(key)] = base64.b64decode(str(value)).decode("utf-8")
                except (binascii.Error, UnicodeDecodeError) as exc:
                    raise KubectlError(
                        f"Secret {name} key {key} is not valid base64 text."
                    ) from exc
        return decoded

    def run_pod(
        self,
        name: str,
        *,
        image: str,
        namespace: str,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, object] | None = None,
        input: str | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a throwaway pod to completion and return its output."""
        args = [
            "run",
            name,
            "--rm",
            "-i",
            "--quiet",
            "--restart=Never",
            f"--image={image}",
            "-n",
            namespace,
        ]
        args.extend(f"--env={key}={value}" for key, value in (env or {}).items())
        if overrides:
            args.append(f"--overrides={json.dumps(dict(overrides))}")
        args.extend(["--command", "--", *command])
        return self._kubectl(
            args,
            input=input,
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _scope(namespace: str | None, all_namespaces: bool) -> list[str]:
        if all_namespaces:
            return ["--all-namespaces"]
        if namespace:
            return ["-n", namespace]
        return []

    def _kubectl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv: list[str] = [self.kubectl_bin]
        if self.kubeconfig is not None:
            argv.extend(["--kubeconfig", str(self.kubeconfig)])
        argv.extend(args)
        command = Command(
            argv=tuple(argv),
            input=input,
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            timeout=timeout if timeout is not None else self.timeout,
        )
        try:
            result = self.runner.run(command)
        except CommandError as exc:
            raise KubectlError(str(exc)) from exc
        if check and not result.ok:
            raise KubectlError(
                f"kubectl {' '.join(args[:2])} failed (exit {result.returncode}): "
                f"{result.message()}"
            )
        return result


__all__ = ["KubectlError", "KubectlProvider"]
