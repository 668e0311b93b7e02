# step_workflows/scan.py
from __future__ import annotations

import json
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional, Sequence
from urllib.parse import urlencode

from ..errors import ScanServiceError
from ..executor import ActionContext, ActionOutput
from ..model import Step
from .base import as_bool, as_list, check_params

QUALITY_GATE_FAILED_RE = re.compile(r"QUALITY GATE STATUS:\s*(FAILED|ERROR)", re.IGNORECASE)


@dataclass
class ScanResult:
    issues: int
    passed: bool
    output: str = ""


def sonar_scan_step(
    name: str,
    project_key: str,
    host_url: str,
    *,
    token: str = "${{ secrets.SONAR_TOKEN }}",
    base_dir: str = ".",
    wait_quality_gate: bool = True,
) -> Step:
    """Create a static-analysis step; the token is normally a secret expression."""
    return Step(
        name=name,
        uses="sonar-scan",
        params={
            "project_key": project_key,
            "host_url": host_url,
            "token": token,
            "base_dir": base_dir,
            "wait_quality_gate": wait_quality_gate,
        },
    )


def _http_get_json(url: str, token: str, timeout: float = 30.0) -> dict:
    req = urllib.request.Request(
        url,
        headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        raise ScanServiceError(f"Analysis server request failed: {e.code} {e.reason}") from None
    except urllib.error.URLError as e:
        raise ScanServiceError(f"Network error: {e.reason}") from None
    except json.JSONDecodeError as e:
        raise ScanServiceError(f"Invalid JSON response: {e}") from None


class SonarScanner:
    """
    Static-analysis collaborator backed by the sonar-scanner CLI.

    The token is passed through the SONAR_TOKEN environment variable so it
    never appears on a command line.
    """

    def __init__(
        self,
        run: Callable,
        *,
        fetch_json: Optional[Callable[[str, str], dict]] = None,
        executable: str = "sonar-scanner",
    ):
        self._run = run
        self._fetch_json = fetch_json or _http_get_json
        self.executable = executable

    def scan(
        self,
        project_key: str,
        base_dir: str,
        auth_token: str,
        host_url: str,
        *,
        wait_quality_gate: bool = True,
        count_issues: bool = True,
        extra_args: Sequence[str] = (),
    ) -> ScanResult:
        args = [
            self.executable,
            f"-Dsonar.projectKey={project_key}",
            f"-Dsonar.projectBaseDir={base_dir}",
            f"-Dsonar.host.url={host_url}",
        ]
        if wait_quality_gate:
            args.append("-Dsonar.qualitygate.wait=true")
        args.extend(extra_args)

        try:
            out = self._run(args, env={"SONAR_TOKEN": auth_token})
        except FileNotFoundError:
            raise ScanServiceError(
                f"{self.executable} is not available. Install the SonarScanner CLI or fix PATH."
            ) from None

        text = f"{out.stdout}\n{out.stderr}"
        if out.exit_code == 0:
            passed = True
        elif QUALITY_GATE_FAILED_RE.search(text):
            passed = False
        else:
            tail = (out.stderr.strip() or out.stdout.strip()).splitlines()[-1:] or [""]
            raise ScanServiceError(f"{self.executable} failed (exit={out.exit_code}): {tail[0]}")

        issues = self.open_issues(project_key, auth_token, host_url) if count_issues else 0
        return ScanResult(issues=issues, passed=passed, output=out.stdout)

    def open_issues(self, project_key: str, auth_token: str, host_url: str) -> int:
        query = urlencode({"componentKeys": project_key, "resolved": "false", "ps": 1})
        data = self._fetch_json(f"{host_url.rstrip('/')}/api/issues/search?{query}", auth_token)
        total = data.get("total")
        if total is None:
            total = (data.get("paging") or {}).get("total")
        try:
            return int(total)
        except (TypeError, ValueError):
            raise ScanServiceError("Analysis server returned no issue count") from None


def sonar_scan_action(ctx: ActionContext) -> ActionOutput:
    """
    with:
      project_key        (required)
      host_url           (required)
      token              (required, usually ${{ secrets.SONAR_TOKEN }})
      base_dir           default "."
      wait_quality_gate  default true
      count_issues       default true
      args               extra scanner arguments
    """
    check_params(
        ctx,
        required=("project_key", "host_url", "token"),
        optional=("base_dir", "wait_quality_gate", "count_issues", "args"),
    )
    p = ctx.params
    scanner = SonarScanner(ctx.run_command)
    result = scanner.scan(
        p["project_key"],
        p.get("base_dir", "."),
        p["token"],
        p["host_url"],
        wait_quality_gate=as_bool(p.get("wait_quality_gate", True)),
        count_issues=as_bool(p.get("count_issues", True)),
        extra_args=as_list(p.get("args")),
    )
    summary = f"Quality gate {'passed' if result.passed else 'FAILED'}; open issues: {result.issues}\n"
    return ActionOutput(exit_code=0 if result.passed else 1, stdout=result.output + summary)
