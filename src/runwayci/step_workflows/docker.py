# step_workflows/docker.py
from __future__ import annotations

import logging
import posixpath
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..errors import ContainerRuntimeError
from ..executor import ActionContext, ActionOutput
from ..model import EnvValue, Step
from .base import as_bool, as_list, check_params

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("No such container", "No such image", "no such container", "no such image")
DOCKER_HINT = "Install Docker and ensure the daemon is running."


def _unique(ids: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for i in ids:
        i = i.strip()
        if i and i not in seen:
            seen.add(i)
            out.append(i)
    return out


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def docker_step(
    name: str,
    cmd: str,
    image: str,
    *,
    cwd: str | None = None,
    volumes: List[str] | None = None,
    env: Dict[str, EnvValue] | None = None,
    user: str | None = None,
) -> Step:
    """Create a step that runs `cmd` in a container with the job workspace mounted."""
    params: Dict[str, object] = {"image": image, "run": cmd}
    if cwd:
        params["cwd"] = cwd
    if volumes:
        params["volumes"] = list(volumes)
    if env:
        # values live in the docker CLI's env; only names reach the command line
        params["env"] = sorted(env)
    if user:
        params["user"] = user
    return Step(name=name, uses="docker-run", params=params, env=dict(env or {}))


def docker_cleanup_step(
    name: str,
    *,
    containers: List[str] | None = None,
    images: List[str] | None = None,
    force_images: bool = False,
) -> Step:
    """Create an idempotent stop/remove step for containers and images."""
    params: Dict[str, object] = {}
    if containers:
        params["containers"] = list(containers)
    if images:
        params["images"] = list(images)
    if force_images:
        params["force_images"] = True
    return Step(name=name, uses="docker-cleanup", params=params)


def compose_up_step(name: str, file: str = "docker-compose.yml", *, build: bool = True,
                    project: str | None = None) -> Step:
    params: Dict[str, object] = {"file": file, "build": build}
    if project:
        params["project"] = project
    return Step(name=name, uses="compose-up", params=params)



class DockerRuntime:
    """
    Container-runtime collaborator over the docker CLI.

    Every mutating call is best-effort idempotent: an empty id list is a
    no-op and "No such container/image" is not an error.
    """

    def __init__(self, run: Callable, *, executable: str = "docker"):
        self._run = run
        self.executable = executable

    def _invoke(self, args: Sequence[str]):
        try:
            return self._run([self.executable, *args])
        except FileNotFoundError:
            raise ContainerRuntimeError(f"{self.executable} is not available. {DOCKER_HINT}") from None

    def _docker(self, *args: str, tolerate_missing: bool = False) -> str:
        out = self._invoke(args)
        if out.exit_code != 0:
            if tolerate_missing and any(m in out.stderr for m in NOT_FOUND_MARKERS):
                logger.debug("docker %s: ignoring missing objects", args[0])
                return out.stdout
            raise ContainerRuntimeError(
                f"docker {args[0]} failed (exit={out.exit_code}): {out.stderr.strip()}"
            )
        return out.stdout

    def list_containers(self, filters: Sequence[str] = (), *, include_stopped: bool = True) -> List[str]:
        args = ["ps", "-q", "--no-trunc"]
        if include_stopped:
            args.append("-a")
        for f in filters:
            args += ["--filter", f]
        return _unique(self._docker(*args).splitlines())

    def stop(self, ids: Sequence[str]) -> List[str]:
        ids = _unique(ids)
        if ids:
            self._docker("stop", *ids, tolerate_missing=True)
        return ids

    def remove(self, ids: Sequence[str]) -> List[str]:
        ids = _unique(ids)
        if ids:
            self._docker("rm", *ids, tolerate_missing=True)
        return ids

    def list_images(self, filters: Sequence[str] = ()) -> List[str]:
        args = ["images", "-q", "--no-trunc"]
        for f in filters:
            args += ["--filter", f]
        return _unique(self._docker(*args).splitlines())

    def remove_images(self, ids: Sequence[str], *, force: bool = False) -> List[str]:
        ids = _unique(ids)
        if ids:
            args = ["rmi", *(["-f"] if force else []), *ids]
            self._docker(*args, tolerate_missing=True)
        return ids

    def compose_up(self, file: str, *, build: bool = False, project: Optional[str] = None) -> str:
        args = ["compose", "-f", file]
        if project:
            args += ["-p", project]
        args += ["up", "-d"]
        if build:
            args.append("--build")
        return self._docker(*args)

    def run_container(
        self,
        image: str,
        command: str,
        *,
        workspace: str,
        workdir: str = ".",
        env_names: Sequence[str] = (),
        volumes: Sequence[str] = (),
        user: Optional[str] = None,
    ):
        """Returns the ProcessOutput of `docker run`; its exit code is the command's."""
        container_workdir = "/workspace"
        args = ["run", "--rm", "-v", f"{workspace}:{container_workdir}"]
        for vol in volumes:
            args += ["-v", vol]
        args += ["-w", posixpath.normpath(f"{container_workdir}/{workdir}")]
        # -e NAME copies the value from the docker CLI's own environment,
        # so values never show up in the process list
        for name in env_names:
            args += ["-e", name]
        if user:
            args += ["--user", user]
        args += [image, "sh", "-c", command]
        return self._invoke(args)


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

def cleanup_action(ctx: ActionContext) -> ActionOutput:
    """
    Stop and remove matching containers, then remove matching images.

    with:
      containers    docker ps filter(s), e.g. "name=app"
      images        docker images filter(s), e.g. "reference=app:*"
      force_images  pass -f to docker rmi (default false)
    """
    check_params(ctx, optional=("containers", "images", "force_images"))
    runtime = DockerRuntime(ctx.run_command)
    lines = []

    container_filters = as_list(ctx.params.get("containers"))
    if container_filters:
        ids = runtime.list_containers(container_filters)
        runtime.stop(ids)
        runtime.remove(ids)
        lines.append(f"Removed {len(ids)} container(s)")

    image_filters = as_list(ctx.params.get("images"))
    if image_filters:
        images = runtime.list_images(image_filters)
        runtime.remove_images(images, force=as_bool(ctx.params.get("force_images", False)))
        lines.append(f"Removed {len(images)} image(s)")

    if not lines:
        lines.append("Nothing to clean up")
    return ActionOutput(exit_code=0, stdout="\n".join(lines) + "\n")


def compose_up_action(ctx: ActionContext) -> ActionOutput:
    """with: file (default docker-compose.yml), build (default false), project"""
    check_params(ctx, optional=("file", "build", "project"))
    runtime = DockerRuntime(ctx.run_command)
    out = runtime.compose_up(
        ctx.params.get("file", "docker-compose.yml"),
        build=as_bool(ctx.params.get("build", False)),
        project=ctx.params.get("project"),
    )
    return ActionOutput(exit_code=0, stdout=out)


def docker_run_action(ctx: ActionContext) -> ActionOutput:
    """
    Run a command inside a container with the job workspace mounted.

    with: image, run (required); env (names to forward), volumes, user, cwd
    """
    check_params(ctx, required=("image", "run"), optional=("env", "volumes", "user", "cwd"))
    runtime = DockerRuntime(ctx.run_command)
    out = runtime.run_container(
        ctx.params["image"],
        ctx.params["run"],
        workspace=str(ctx.workdir),
        workdir=ctx.params.get("cwd", "."),
        env_names=as_list(ctx.params.get("env")),
        volumes=as_list(ctx.params.get("volumes")),
        user=ctx.params.get("user"),
    )
    return ActionOutput(exit_code=out.exit_code, stdout=out.stdout, stderr=out.stderr)
