# kube.py
# Orchestration API backed by the kubectl CLI.
# All cluster access goes through _kubectl() so the controller never
# shells out on its own.

from __future__ import annotations

import json
import logging
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urljoin

from .environments import ProbeResult, RolloutStatus
from .errors import UnknownEnvironmentError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeTarget:
    """Where an environment lives in the cluster and how to reach it."""
    namespace: str
    deployment: str
    container: str
    base_url: str                     # e.g. https://staging.example.com
    context: Optional[str] = None     # kubeconfig context


class KubectlOrchestrator:
    def __init__(self, targets: Dict[str, KubeTarget], *, kubectl: str = "kubectl", probe_timeout: float = 10.0):
        self.targets = dict(targets)
        self.kubectl = kubectl
        self.probe_timeout = probe_timeout

    def _target(self, environment: str) -> KubeTarget:
        try:
            return self.targets[environment]
        except KeyError:
            raise UnknownEnvironmentError(environment) from None

    def _kubectl(self, target: KubeTarget, args: List[str]) -> str:
        cmd = [self.kubectl]
        if target.context:
            cmd.extend(["--context", target.context])
        cmd.extend(["-n", target.namespace, *args])
        log.debug("kubectl %s", " ".join(cmd[1:]))
        out = subprocess.check_output(cmd, text=True, stderr=subprocess.STDOUT)
        return out.strip()

    # --- OrchestrationAPI -------------------------------------------

    def set_image(self, environment: str, reference: str) -> None:
        t = self._target(environment)
        self._kubectl(t, ["set", "image", f"deployment/{t.deployment}", f"{t.container}={reference}"])

    def get_rollout_status(self, environment: str) -> RolloutStatus:
        t = self._target(environment)
        raw = self._kubectl(t, ["get", "deployment", t.deployment, "-o", "json"])
        return parse_rollout_status(json.loads(raw))

    def health_probe(self, environment: str, path: str) -> ProbeResult:
        t = self._target(environment)
        url = urljoin(t.base_url.rstrip("/") + "/", path.lstrip("/"))
        req = urllib.request.Request(url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.probe_timeout) as response:
                code = response.status
                return ProbeResult(ok=200 <= code < 300, status_code=code)
        except urllib.error.HTTPError as e:
            return ProbeResult(ok=False, status_code=e.code)
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            log.debug("probe %s failed: %s", url, e)
            return ProbeResult(ok=False, status_code=None)


def parse_rollout_status(deployment: dict) -> RolloutStatus:
    """
    A rollout is available once the controller has observed the latest
    spec and every desired replica is updated, ready and available.
    """
    spec = deployment.get("spec", {})
    status = deployment.get("status", {})
    meta = deployment.get("metadata", {})

    desired = int(spec.get("replicas", 1))
    updated = int(status.get("updatedReplicas", 0))
    ready = int(status.get("readyReplicas", 0))
    available = int(status.get("availableReplicas", 0))
    observed = int(status.get("observedGeneration", 0)) >= int(meta.get("generation", 0))

    ok = observed and updated >= desired and ready >= desired and available >= desired
    return RolloutStatus(available=ok, replicas=desired, ready_replicas=ready)


def orchestrator_from_definition(definition, *, kubectl: str = "kubectl") -> KubectlOrchestrator:
    """Build a kubectl orchestrator from the `target` blocks of a PipelineDefinition."""
    targets: Dict[str, KubeTarget] = {}
    for env in definition.environments:
        if env.target is None:
            continue
        targets[env.name] = KubeTarget(
            namespace=env.target.namespace,
            deployment=env.target.deployment,
            container=env.target.container,
            base_url=env.target.url,
            context=env.target.context,
        )
    return KubectlOrchestrator(targets, kubectl=kubectl)
