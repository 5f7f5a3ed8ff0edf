# workspace.py
# Default implementations of the collaborators action handlers touch:
# filesystem, file search, git, URL fetching, fuzzy path lookup, commands.
#
# Failures are raised, not returned. The dispatcher turns any exception into
# an ActionResult, keeping the message as-is so the model can self-correct.

import asyncio
import difflib
import fnmatch
import logging
import os
import shutil
from pathlib import Path

import httpx
from git import Repo

from crkd.errors import NetworkError
from crkd.models import CommandOutput, SearchMatch

logger = logging.getLogger(__name__)

IGNORED_DIRECTORIES = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}
)


def _walk_files(directory: Path) -> list[Path]:
    files: list[Path] = []
    for current, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRECTORIES)
        files.extend(Path(current) / name for name in sorted(filenames))
    return files


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class FileOperations:
    """Filesystem access rooted at the project directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.resolve()

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def read(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, content: str) -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def delete(self, path: str) -> Path:
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        target.unlink()
        return target

    def move(self, source: str, destination: str) -> Path:
        src = self.resolve(source)
        if not src.exists():
            raise FileNotFoundError(f"Source file not found: {source}")
        dst = self.resolve(destination)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
        return dst

    def copy(self, source: str, destination: str) -> Path:
        src = self.resolve(source)
        if not src.is_file():
            raise FileNotFoundError(f"Source file not found: {source}")
        dst = self.resolve(destination)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return dst

    def list_files(self, path: str, recursive: bool = False) -> list[str]:
        directory = self.resolve(path)
        if not directory.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        if recursive:
            files = _walk_files(directory)
        else:
            files = sorted(p for p in directory.iterdir() if p.is_file())
        return [str(p.relative_to(self.root)) if p.is_relative_to(self.root) else str(p) for p in files]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class FileSearch:
    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _directory(self, directory: str) -> Path:
        path = Path(directory)
        return (path if path.is_absolute() else self.root / path).resolve()

    def find_by_name(self, term: str, directory: str) -> list[str]:
        """Files whose name matches a glob pattern or contains the term."""
        results = []
        for path in _walk_files(self._directory(directory)):
            if fnmatch.fnmatch(path.name, term) or term in path.name:
                results.append(str(path))
        return results

    def find_by_content(self, term: str, directory: str) -> list[SearchMatch]:
        """Every line containing the term, in path then line order."""
        matches: list[SearchMatch] = []
        for path in _walk_files(self._directory(directory)):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(lines, start=1):
                if term in line:
                    matches.append(SearchMatch(path=str(path), line=number, content=line.strip()))
        return matches


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class GitService:
    """Thin GitPython wrapper. The repository is opened on first use."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._repo: Repo | None = None

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            self._repo = Repo(self.root, search_parent_directories=True)
        return self._repo

    def diff(
        self,
        from_ref: str | None = None,
        to_ref: str | None = None,
        exclude_patterns: list[str] | None = None,
    ) -> str:
        args = [ref for ref in (from_ref, to_ref) if ref]
        if exclude_patterns:
            args.append("--")
            args.append(".")
            args.extend(f":!{pattern}" for pattern in exclude_patterns)
        logger.debug("git diff %s", " ".join(args))
        return self.repo.git.diff(*args)

    def current_branch(self) -> str:
        return self.repo.active_branch.name


# ---------------------------------------------------------------------------
# URL fetching
# ---------------------------------------------------------------------------


class UrlFetcher:
    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, url: str) -> str:
        """
        GET the URL and return its body text.
        Raises NetworkError on transport failure or an error status.
        """
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NetworkError(f"Network error: {exc.response.status_code} for {url}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Network error: {exc}") from exc
        return response.text

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Fuzzy path lookup
# ---------------------------------------------------------------------------


class PathAdjuster:
    """
    Finds the closest existing file for a path that does not exist.

    Similarity is difflib's ratio over root-relative paths, compared both with
    and without the file suffix so extension-less import paths still match.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self._index: list[Path] | None = None

    def _files(self) -> list[Path]:
        if self._index is None:
            self._index = _walk_files(self.root)
        return self._index

    def refresh(self) -> None:
        self._index = None

    def _relative(self, path: Path) -> str:
        if path.is_relative_to(self.root):
            return path.relative_to(self.root).as_posix()
        return path.as_posix()

    def adjust_path(self, candidate: str, threshold: float = 0.6) -> str | None:
        path = Path(candidate)
        if not path.is_absolute():
            path = self.root / path
        path = path.resolve()
        if path.is_file():
            return str(path)

        best: tuple[float, Path] | None = None
        wanted = self._relative(path)
        for existing in self._files():
            relative = self._relative(existing)
            score = max(
                difflib.SequenceMatcher(None, wanted, relative).ratio(),
                difflib.SequenceMatcher(None, wanted, self._relative(existing.with_suffix(""))).ratio(),
            )
            if best is None or score > best[0]:
                best = (score, existing)

        if best is not None and best[0] >= threshold:
            return str(best[1])
        return None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class CommandRunner:
    def __init__(self, root: Path, timeout: float = 120.0) -> None:
        self.root = root
        self.timeout = timeout

    async def run(self, command: str) -> CommandOutput:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self.root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.timeout:g}s: {command}") from None
        return CommandOutput(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
