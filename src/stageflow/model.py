# model.py
from __future__ import annotations

import enum
import re
import string
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


class StageStatus(str, enum.Enum):
    PENDING = "pending"        # waiting on dependencies
    READY = "ready"            # dependencies satisfied, not yet dispatched
    WAITING = "waiting"        # gate is pending (approval / wait timer)
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}
)


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class TriggerKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


# Skip reasons recorded on SKIPPED transitions
SKIP_CONDITION = "condition"
SKIP_UPSTREAM_FAILED = "upstream-failed"


@dataclass(frozen=True)
class Command:
    """Opaque executable reference + arguments for a non-deploy stage."""
    argv: Tuple[str, ...]
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    # docker image to run the command in (None -> host shell)
    image: str | None = None

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_base: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))


@dataclass(frozen=True)
class Stage:
    """
    A named unit of pipeline work.

    A stage with `environment` set is a deploy stage: instead of running a
    command it hands `image` to the environment controller.
    """
    id: str
    needs: Tuple[str, ...] = ()
    command: Optional[Command] = None
    concurrency_group: str | None = None
    timeout: float = 600.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    required: bool = True

    # gate filters (empty -> match everything)
    branches: Tuple[str, ...] = ()
    events: Tuple[TriggerKind, ...] = ()

    # deploy stages
    environment: str | None = None
    image: str | None = None

    @property
    def is_deploy(self) -> bool:
        return self.environment is not None


# placeholders a deploy image may use, filled by TriggerEvent.render
TEMPLATE_FIELDS = frozenset({"commit", "short_commit", "ref", "branch"})


def unknown_template_fields(template: str) -> List[str]:
    """
    Placeholders in `template` that TriggerEvent.render cannot fill.

    Raises:
      ValueError: unbalanced braces
    """
    unknown = []
    for _text, name, _spec, _conv in string.Formatter().parse(template):
        if name is None:
            continue
        if re.split(r"[.\[]", name, maxsplit=1)[0] not in TEMPLATE_FIELDS:
            unknown.append(name)
    return unknown


@dataclass(frozen=True)
class TriggerEvent:
    """An incoming VCS / operator event. Immutable once received."""
    kind: TriggerKind
    ref: str
    commit: str
    actor: str

    @property
    def branch(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def dedup_key(self) -> Tuple[str, str]:
        return (self.ref, self.commit)

    def render(self, template: str) -> str:
        """Fill `{commit}`, `{short_commit}`, `{ref}` and `{branch}` placeholders."""
        return template.format(
            commit=self.commit,
            short_commit=self.commit[:7],
            ref=self.ref,
            branch=self.branch,
        )
