# step_workflows/__init__.py
# Tool actions: steps written as `uses: <name>` with a `with:` mapping.
from __future__ import annotations

from typing import Dict

from ..executor import Action
from .checkout import checkout_action
from .docker import cleanup_action, compose_up_action, docker_run_action
from .scan import sonar_scan_action


def default_actions() -> Dict[str, Action]:
    return {
        "checkout": checkout_action,
        "sonar-scan": sonar_scan_action,
        "docker-cleanup": cleanup_action,
        "compose-up": compose_up_action,
        "docker-run": docker_run_action,
    }
