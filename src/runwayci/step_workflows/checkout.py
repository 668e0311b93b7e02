# step_workflows/checkout.py
from __future__ import annotations

from ..errors import CheckoutError
from ..executor import ActionContext, ActionOutput
from ..git_facts import git
from ..model import Step
from .base import check_params


def checkout_step(name: str = "Checkout", *, depth: int | str = "full", path: str | None = None,
                  repository: str | None = None, ref: str | None = None) -> Step:
    params = {"depth": depth}
    if path:
        params["path"] = path
    if repository:
        params["repository"] = repository
    if ref:
        params["ref"] = ref
    return Step(name=name, uses="checkout", params=params)


def checkout_action(ctx: ActionContext) -> ActionOutput:
    """
    Clone the triggering repository into the job's working directory.

    with:
      repository  URL or path (defaults to the event's repository)
      ref         branch/tag (defaults to the event ref)
      sha         commit to check out (defaults to the event SHA unless
                  `ref` is given explicitly)
      depth       "full" (default) or an integer for a shallow clone
      path        sub-directory of the workspace (default ".")
    """
    check_params(ctx, optional=("repository", "ref", "sha", "depth", "path"))
    p = ctx.params

    repository = p.get("repository") or ctx.info.get("repository")
    if not repository:
        raise CheckoutError("no repository to check out: set `repository` or include it in the trigger event")

    if p.get("ref"):
        ref = p["ref"]
        sha = p.get("sha", "")
    else:
        ref = ctx.info.get("ref", "")
        sha = p.get("sha") or ctx.info.get("sha", "")

    dest = git.checkout(
        repository,
        ctx.workdir / p.get("path", "."),
        ref=ref,
        sha=sha,
        depth=p.get("depth", "full"),
        run=ctx.run_command,
    )
    return ActionOutput(exit_code=0, stdout=f"Checked out {sha or ref or 'HEAD'} into {dest}\n")
