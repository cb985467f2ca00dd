"""
aurbuild.recipes – clone or fast-forward AUR recipe repositories
"""

import logging
import shutil
from pathlib import Path
from typing import Optional

from .errors import RecipeFetchFailed

# optionals
try:
    import pygit2

    PYGIT2_AVAILABLE = True
except ImportError:
    PYGIT2_AVAILABLE = False
    pygit2 = None  # type: ignore

LOGGER = logging.getLogger(__name__)
RECIPE_FILE = "PKGBUILD"


class RecipeFetcher:
    """Keeps one git working tree per package base under ``cache_dir``."""

    def __init__(self, cache_dir: Path, base_url: str, retries: int = 1) -> None:
        self.cache_dir = Path(cache_dir)
        self.base_url = base_url.rstrip("/")
        self.retries = max(0, retries)

    def url_for(self, pkgbase: str) -> str:
        return f"{self.base_url}/{pkgbase}.git"

    def fetch(self, pkgbase: str) -> Path:
        """Return a working tree holding the current recipe for ``pkgbase``.

        An existing clone is fast-forwarded to the remote head; otherwise the
        repository is cloned.  A failed attempt discards the tree and is
        retried from scratch ``retries`` times.
        """
        if not PYGIT2_AVAILABLE:
            raise RecipeFetchFailed(pkgbase, "pygit2 is not installed; cannot fetch recipes")
        path = self.cache_dir / pkgbase
        url = self.url_for(pkgbase)
        last_error: Optional[str] = None
        for attempt in range(self.retries + 1):
            try:
                if (path / ".git").is_dir():
                    self._update(path, pkgbase)
                else:
                    self._clone(url, path, pkgbase)
                self._check_tree(path, pkgbase)
                return path
            except RecipeFetchFailed:
                shutil.rmtree(path, ignore_errors=True)
                raise
            except (pygit2.GitError, KeyError, ValueError, OSError) as e:
                last_error = str(e)
                LOGGER.warning(
                    f"Fetching recipe for {pkgbase} failed: {e} [{attempt + 1}/{self.retries + 1}]"
                )
                shutil.rmtree(path, ignore_errors=True)
        raise RecipeFetchFailed(pkgbase, f"could not fetch {url}: {last_error}")

    def _clone(self, url: str, path: Path, pkgbase: str) -> None:
        LOGGER.info(f"Cloning {pkgbase} from {url}")
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.rmtree(path, ignore_errors=True)
        pygit2.clone_repository(url, str(path))

    def _update(self, path: Path, pkgbase: str) -> None:
        repo = pygit2.Repository(str(path))
        remote = repo.remotes["origin"]
        LOGGER.info(f"Fetching {pkgbase} from {remote.url}")
        remote.fetch()
        if repo.head_is_unborn:
            raise RecipeFetchFailed(pkgbase, "recipe repository is empty")

        # refs/remotes/origin/<current branch>, falling back to master/main
        candidates = [
            f"refs/remotes/origin/{repo.head.shorthand}",
            "refs/remotes/origin/master",
            "refs/remotes/origin/main",
        ]
        remote_ref = next(
            (ref for ref in candidates if repo.references.get(ref) is not None), None
        )
        if remote_ref is None:
            raise RecipeFetchFailed(pkgbase, "could not determine the remote default branch")

        target = repo.references[remote_ref].target
        if target == repo.head.target:
            LOGGER.debug(f"{pkgbase} is up to date")
            return
        repo.references[repo.head.name].set_target(target)
        repo.checkout_head(strategy=pygit2.enums.CheckoutStrategy.FORCE)
        LOGGER.info(f"Fast-forwarded {pkgbase} to {str(target)[:7]}")

    @staticmethod
    def _check_tree(path: Path, pkgbase: str) -> None:
        repo = pygit2.Repository(str(path))
        if repo.is_empty or repo.head_is_unborn:
            raise RecipeFetchFailed(pkgbase, "recipe repository is empty")
        if not (path / RECIPE_FILE).is_file():
            raise RecipeFetchFailed(pkgbase, f"repository has no {RECIPE_FILE}")
