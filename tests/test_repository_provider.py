"""Tests for the git working-copy provider and the build step."""
from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from sitectl.errors import BuildError, ConflictError, RepositoryError
from sitectl.providers.repository import GitProvider

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=sitectl", "-c", "user.email=sitectl@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def _commit(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", message)
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    """Create an upstream repository with one commit on ``main``."""
    repo = tmp_path / "origin"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _commit(repo, "index.html", "<h1>R1</h1>\n", "R1")
    return repo


@requires_git
def test_sync_clones_fresh_working_copy(origin: Path, tmp_path: Path) -> None:
    """A missing working copy is cloned and left on the requested branch."""
    provider = GitProvider()
    site = tmp_path / "www" / "site"

    state = provider.sync(site, str(origin), "main")

    assert state.revision == _git(origin, "rev-parse", "HEAD")
    assert state.branch == "main"
    assert state.clean is True
    assert (site / "index.html").read_text(encoding="utf-8") == "<h1>R1</h1>\n"


@requires_git
def test_sync_fast_forwards_existing_copy(origin: Path, tmp_path: Path) -> None:
    """New upstream commits are fast-forwarded into the working copy."""
    provider = GitProvider()
    site = tmp_path / "site"
    provider.sync(site, str(origin), "main")
    r2 = _commit(origin, "index.html", "<h1>R2</h1>\n", "R2")

    state = provider.sync(site, str(origin), "main")

    assert state.revision == r2
    assert (site / "index.html").read_text(encoding="utf-8") == "<h1>R2</h1>\n"


@requires_git
def test_sync_refuses_local_modifications(origin: Path, tmp_path: Path) -> None:
    """Uncommitted changes to tracked files abort the sync untouched."""
    provider = GitProvider()
    site = tmp_path / "site"
    provider.sync(site, str(origin), "main")
    _commit(origin, "index.html", "<h1>R2</h1>\n", "R2")
    (site / "index.html").write_text("local edit\n", encoding="utf-8")

    with pytest.raises(ConflictError, match="uncommitted changes"):
        provider.sync(site, str(origin), "main")

    assert (site / "index.html").read_text(encoding="utf-8") == "local edit\n"


def test_sync_without_remote_or_working_copy(tmp_path: Path) -> None:
    """Nothing to clone and nothing on disk is a repository error."""
    with pytest.raises(RepositoryError, match="no repository URL"):
        GitProvider().sync(tmp_path / "site", "", "main")


@requires_git
def test_rollback_moves_back_one_revision(origin: Path, tmp_path: Path) -> None:
    """Rollback after R1 and R2 leaves the working copy at R1."""
    provider = GitProvider()
    site = tmp_path / "site"
    r1 = _git(origin, "rev-parse", "HEAD")
    provider.sync(site, str(origin), "main")
    _commit(origin, "index.html", "<h1>R2</h1>\n", "R2")
    provider.sync(site, str(origin), "main")

    state = provider.rollback(site)

    assert state.revision == r1
    assert state.branch is None
    assert (site / "index.html").read_text(encoding="utf-8") == "<h1>R1</h1>\n"


@requires_git
def test_rollback_without_history_fails(origin: Path, tmp_path: Path) -> None:
    """A single-commit history has nothing to roll back to."""
    provider = GitProvider()
    site = tmp_path / "site"
    provider.sync(site, str(origin), "main")

    with pytest.raises(RepositoryError, match="No revision before HEAD"):
        provider.rollback(site)


@requires_git
def test_recent_commits_lists_oneline_history(origin: Path, tmp_path: Path) -> None:
    """Status shows at most five one-line commit summaries."""
    for number in range(2, 8):
        _commit(origin, "index.html", f"<h1>R{number}</h1>\n", f"R{number}")
    provider = GitProvider()
    site = tmp_path / "site"
    provider.sync(site, str(origin), "main")

    commits = provider.recent_commits(site)

    assert len(commits) == 5
    assert commits[0].endswith("R7")


def test_revision_outside_working_copy(tmp_path: Path) -> None:
    """Directories without ``.git`` report no revision and no commits."""
    provider = GitProvider()

    assert provider.revision(tmp_path) is None
    assert provider.recent_commits(tmp_path) == []


def _fake_npm(tmp_path: Path, *, fail_build: bool = False) -> Path:
    script = tmp_path / "bin" / "npm"
    script.parent.mkdir(parents=True, exist_ok=True)
    build = "exit 1" if fail_build else "mkdir -p dist && echo built > dist/index.html"
    script.write_text(
        "#!/bin/sh\n"
        'if [ "$1" = "run" ]; then\n'
        f"  {build}\n"
        "fi\n"
        'if [ "$1" = "ci" ]; then mkdir -p node_modules; fi\n',
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def _site_with_manifest(tmp_path: Path, scripts: dict[str, str]) -> Path:
    site = tmp_path / "site"
    site.mkdir()
    (site / "package.json").write_text(json.dumps({"name": "site", "scripts": scripts}))
    (site / "index.html").write_text("<h1>src</h1>\n", encoding="utf-8")
    return site


def test_build_skipped_without_manifest(tmp_path: Path) -> None:
    """Sites without ``package.json`` declare no build."""
    site = tmp_path / "site"
    site.mkdir()

    result = GitProvider().build(site)

    assert result.declared is False
    assert GitProvider().serve_root(site) == site


def test_build_swaps_in_output(tmp_path: Path) -> None:
    """A successful build publishes ``dist`` and serves from it."""
    site = _site_with_manifest(tmp_path, {"build": "vite build"})
    provider = GitProvider(npm_bin=str(_fake_npm(tmp_path)))

    result = provider.build(site)

    assert result.declared is True
    assert result.output_dir == site / "dist"
    assert result.commands[-1].endswith("run build")
    assert (site / "dist" / "index.html").read_text(encoding="utf-8") == "built\n"
    assert provider.serve_root(site) == site / "dist"
    assert not any(p.name.startswith(".site-build-") for p in tmp_path.iterdir())


def test_failed_build_keeps_previous_output(tmp_path: Path) -> None:
    """The previous output survives a failing build command."""
    site = _site_with_manifest(tmp_path, {"build": "vite build"})
    (site / "dist").mkdir()
    (site / "dist" / "index.html").write_text("previous\n", encoding="utf-8")
    provider = GitProvider(npm_bin=str(_fake_npm(tmp_path, fail_build=True)))

    with pytest.raises(BuildError, match="run build failed"):
        provider.build(site)

    assert (site / "dist" / "index.html").read_text(encoding="utf-8") == "previous\n"


def test_build_disabled_in_config(tmp_path: Path) -> None:
    """Disabling builds ignores the manifest."""
    site = _site_with_manifest(tmp_path, {"build": "vite build"})

    assert GitProvider(build_enabled=False).build(site).declared is False
