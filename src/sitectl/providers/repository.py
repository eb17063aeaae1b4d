"""Working-copy management: git sync, single-step rollback and site builds."""
from __future__ import annotations

import json
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import BuildError, ConflictError, RepositoryError
from ..models import BuildResult, RepositoryState
from ..operations import OperationResult, run_operation

BUILD_MANIFEST = "package.json"
DEPENDENCIES_DIR = "node_modules"


@dataclass(slots=True)
class GitProvider:
    """Keep the site working copy at the requested revision.

    Local modifications to tracked files are never discarded: any operation
    that would overwrite them fails with :class:`ConflictError` instead.
    """

    git_bin: str = "git"
    npm_bin: str = "npm"
    build_enabled: bool = True
    output_dir: str = "dist"

    def is_working_copy(self, path: Path) -> bool:
        """Return ``True`` when *path* holds a git working copy."""
        return (path / ".git").exists()

    def revision(self, path: Path) -> str | None:
        """Return the checked-out commit id, or ``None`` without a working copy."""
        if not self.is_working_copy(path):
            return None
        result = self._git(["rev-parse", "HEAD"], cwd=path, check=False)
        return result.stdout.strip() or None if result.ok else None

    def branch(self, path: Path) -> str | None:
        """Return the current branch name, or ``None`` when HEAD is detached."""
        result = self._git(["symbolic-ref", "--short", "-q", "HEAD"], cwd=path, check=False)
        return result.stdout.strip() or None if result.ok else None

    def is_dirty(self, path: Path) -> bool:
        """Return ``True`` when tracked files carry uncommitted changes."""
        result = self._git(["status", "--porcelain", "--untracked-files=no"], cwd=path)
        return bool(result.stdout.strip())

    def state(self, path: Path, ref: str) -> RepositoryState:
        """Return the observed :class:`RepositoryState` for *path*."""
        if not self.is_working_copy(path):
            return RepositoryState(path=path, revision=None, desired_ref=ref)
        return RepositoryState(
            path=path,
            revision=self.revision(path),
            desired_ref=ref,
            clean=not self.is_dirty(path),
            branch=self.branch(path),
        )

    def sync(self, path: Path, remote_url: str, ref: str) -> RepositoryState:
        """Clone or fast-forward *path* to *ref* from *remote_url*."""
        if not self.is_working_copy(path):
            if not remote_url:
                raise RepositoryError(
                    f"No working copy at {path} and no repository URL configured."
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            self._git(["clone", remote_url, str(path)])
            if ref and self.branch(path) != ref:
                self._git(["checkout", "-q", ref], cwd=path)
            return self.state(path, ref)

        if self.is_dirty(path):
            raise ConflictError(
                f"Working copy at {path} has uncommitted changes; refusing to sync."
            )
        self._git(["fetch", "-q", "origin", ref], cwd=path)
        if self.branch(path) != ref:
            self._git(["checkout", "-q", ref], cwd=path)
        merge = self._git(["merge", "--ff-only", "-q", "FETCH_HEAD"], cwd=path, check=False)
        if not merge.ok:
            raise ConflictError(
                f"Cannot fast-forward {path} to origin/{ref}: {merge.message}"
            )
        return self.state(path, ref)

    def rollback(self, path: Path) -> RepositoryState:
        """Check out the revision immediately preceding HEAD (detached)."""
        if not self.is_working_copy(path):
            raise RepositoryError(f"No working copy at {path}; nothing to roll back.")
        if self.is_dirty(path):
            raise ConflictError(
                f"Working copy at {path} has uncommitted changes; refusing to roll back."
            )
        previous = self._git(["rev-parse", "--verify", "-q", "HEAD~1"], cwd=path, check=False)
        if not previous.ok or not previous.stdout.strip():
            raise RepositoryError(f"No revision before HEAD in {path}.")
        self._git(["checkout", "-q", "--detach", previous.stdout.strip()], cwd=path)
        return self.state(path, previous.stdout.strip())

    def recent_commits(self, path: Path, *, limit: int = 5) -> list[str]:
        """Return up to *limit* one-line commit summaries."""
        if not self.is_working_copy(path):
            return []
        result = self._git(["log", "--oneline", f"-{limit}"], cwd=path, check=False)
        return [line for line in result.stdout.splitlines() if line.strip()] if result.ok else []

    # Build step -------------------------------------------------------
    def build_declared(self, path: Path) -> bool:
        """Return ``True`` when the working copy declares a build."""
        return self.build_enabled and (path / BUILD_MANIFEST).is_file()

    def build_script_declared(self, path: Path) -> bool:
        """Return ``True`` when the manifest defines a ``build`` script."""
        if not self.build_declared(path):
            return False
        try:
            manifest = json.loads((path / BUILD_MANIFEST).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
        return isinstance(scripts, dict) and "build" in scripts

    def serve_root(self, path: Path) -> Path:
        """Return the directory the web process should serve."""
        if self.build_script_declared(path):
            return path / self.output_dir
        return path

    def build(self, path: Path) -> BuildResult:
        """Run the declared build in a staging copy and swap in its output.

        The previous output directory is replaced only after every build
        command succeeded, so a failing build leaves it untouched.
        """
        if not self.build_declared(path):
            return BuildResult(declared=False)

        has_build_script = self.build_script_declared(path)
        staging_root = Path(tempfile.mkdtemp(prefix=f".{path.name}-build-", dir=str(path.parent)))
        workdir = staging_root / "tree"
        try:
            shutil.copytree(
                path,
                workdir,
                symlinks=True,
                ignore=shutil.ignore_patterns(".git", DEPENDENCIES_DIR, self.output_dir),
            )
            commands: list[list[str]] = []
            if has_build_script:
                commands.append([self.npm_bin, "ci"])
                commands.append([self.npm_bin, "run", "build"])
            else:
                commands.append([self.npm_bin, "ci", "--omit=dev"])
            for command in commands:
                result = run_operation(command, cwd=workdir)
                if not result.ok:
                    raise BuildError(
                        f"{' '.join(command)} failed (exit {result.returncode}): {result.message}"
                    )

            produced = self.output_dir if has_build_script else DEPENDENCIES_DIR
            if not (workdir / produced).exists():
                raise BuildError(f"Build finished without producing {produced}/.")
            _swap_into(workdir / produced, path / produced, staging_root)
        except OSError as exc:
            raise BuildError(f"Build staging failed for {path}: {exc}") from exc
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)
        return BuildResult(
            declared=True,
            output_dir=path / produced,
            commands=tuple(" ".join(command) for command in commands),
        )

    # ------------------------------------------------------------------
    def _git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> OperationResult:
        result = run_operation([self.git_bin, *args], cwd=cwd)
        if check and not result.ok:
            raise RepositoryError(
                f"{self.git_bin} {' '.join(args)} failed (exit {result.returncode}): "
                f"{result.message}"
            )
        return result


def _swap_into(source: Path, target: Path, staging_root: Path) -> None:
    """Move *source* to *target*, parking any previous *target* until done."""
    parked = staging_root / "previous"
    if target.exists():
        target.rename(parked)
    try:
        source.rename(target)
    except OSError:
        if parked.exists():
            parked.rename(target)
        raise


__all__ = ["GitProvider"]
