"""
aurbuild.aur – AUR RPC client with a per-run metadata cache
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import httpx

from .errors import FetchFailed, MalformedVersion
from .models import PackageRecord, Source
from .version import parse_dependencies

LOGGER = logging.getLogger(__name__)
AUR_URL = "https://aur.archlinux.org"
RPC_PATH = "/rpc/"
RPC_VERSION = "5"
USER_AGENT = "aurbuild (+https://aur.archlinux.org)"

FetchOutcome = Union[PackageRecord, None, FetchFailed]


def record_from_rpc(rec: Dict[str, Any]) -> PackageRecord:
    """Turn one RPC result into a PackageRecord, parsing every dependency string."""
    makedepends = parse_dependencies(rec.get("MakeDepends")) + parse_dependencies(
        rec.get("CheckDepends")
    )
    return PackageRecord(
        name=rec["Name"],
        version=rec["Version"],
        source=Source.AUR,
        provides=frozenset(parse_dependencies(rec.get("Provides"))),
        conflicts=frozenset(parse_dependencies(rec.get("Conflicts"))),
        depends=parse_dependencies(rec.get("Depends")),
        makedepends=makedepends,
        package_base=rec.get("PackageBase"),
        repository="aur",
        description=rec.get("Description"),
        url=rec.get("URL"),
        url_path=rec.get("URLPath"),
        maintainer=rec.get("Maintainer"),
        num_votes=rec.get("NumVotes") or 0,
        popularity=rec.get("Popularity") or 0.0,
        first_submitted=rec.get("FirstSubmitted"),
        last_modified=rec.get("LastModified"),
        out_of_date=rec.get("OutOfDate"),
    )


class AurClient:
    """Batched AUR lookups, cached for the lifetime of one client.

    A client is meant to live for a single resolution run; metadata is never
    written to disk.
    """

    def __init__(
        self,
        base_url: str = AUR_URL,
        timeout: float = 10.0,
        retries: int = 3,
        backoff: float = 0.5,
        workers: int = 4,
        batch_size: int = 100,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retries = max(1, retries)
        self.backoff = backoff
        self.workers = max(1, workers)
        self.batch_size = max(1, batch_size)
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self._sleep = sleep
        self._cache: Dict[str, FetchOutcome] = {}

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "AurClient":
        return cls(
            base_url=settings.aur_url,
            timeout=settings.request_timeout,
            retries=settings.fetch_retries,
            backoff=settings.retry_backoff,
            workers=settings.fetch_workers,
            batch_size=settings.batch_size,
            **kwargs,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "AurClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------ #
    # RPC                                                                #
    # ------------------------------------------------------------------ #

    def _request(self, params: Sequence, context: str) -> Dict[str, Any]:
        last_error = ""
        for attempt in range(1, self.retries + 1):
            try:
                response = self.client.get(RPC_PATH, params=params)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code >= 500 or response.status_code == 429:
                    last_error = f"HTTP {response.status_code}"
                else:
                    return self._decode(response, context)
            if attempt < self.retries:
                delay = self.backoff * 2 ** (attempt - 1)
                LOGGER.warning(
                    f"AUR request for {context} failed ({last_error}), "
                    f"retrying in {delay:g}s [{attempt}/{self.retries}]"
                )
                self._sleep(delay)
        raise FetchFailed(
            context, f"AUR request failed after {self.retries} attempts: {last_error}"
        )

    @staticmethod
    def _decode(response: httpx.Response, context: str) -> Dict[str, Any]:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchFailed(context, f"AUR API error: HTTP {e.response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise FetchFailed(context, f"failed to parse AUR response: {e}")
        if not isinstance(data, dict):
            raise FetchFailed(context, "unexpected AUR response")
        if data.get("type") == "error":
            raise FetchFailed(context, f"AUR API error: {data.get('error')}")
        return data

    def _info_batch(self, names: List[str]) -> Dict[str, FetchOutcome]:
        params = [("v", RPC_VERSION), ("type", "info")]
        params.extend(("arg[]", name) for name in names)
        context = names[0] if len(names) == 1 else f"{names[0]} (+{len(names) - 1})"
        LOGGER.debug(f"AUR info request for {len(names)} package(s): {', '.join(names)}")
        data = self._request(params, context)

        found: Dict[str, FetchOutcome] = {}
        for rec in data.get("results") or []:
            name = rec.get("Name")
            if not name:
                continue
            try:
                found[name] = record_from_rpc(rec)
            except (KeyError, MalformedVersion) as e:
                found[name] = FetchFailed(name, f"malformed AUR metadata: {e}")
        return {name: found.get(name) for name in names}

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #

    def fetch(self, names: Iterable[str]) -> Dict[str, FetchOutcome]:
        """Look up several packages by exact name.

        Each name maps to its PackageRecord, ``None`` when the AUR has no such
        package, or a FetchFailed instance when the lookup could not complete.
        Uncached names are split into batches that run on a bounded pool; the
        results are merged here, in the calling thread.
        """
        wanted = list(dict.fromkeys(n for n in names if n))
        missing = [n for n in wanted if n not in self._cache]
        if missing:
            batches = [
                missing[i : i + self.batch_size]
                for i in range(0, len(missing), self.batch_size)
            ]
            results: Dict[str, FetchOutcome] = {}
            if len(batches) == 1 or self.workers == 1:
                for batch in batches:
                    results.update(self._run_batch(batch))
            else:
                with ThreadPoolExecutor(max_workers=self.workers) as pool:
                    futures = [pool.submit(self._run_batch, b) for b in batches]
                    for future in as_completed(futures):
                        results.update(future.result())
            self._cache.update(results)
        return {n: self._cache[n] for n in wanted}

    def _run_batch(self, batch: List[str]) -> Dict[str, FetchOutcome]:
        try:
            return self._info_batch(batch)
        except FetchFailed as e:
            LOGGER.error(f"AUR lookup failed for {', '.join(batch)}: {e.message}")
            return {name: FetchFailed(name, e.message) for name in batch}

    def get(self, name: str) -> Optional[PackageRecord]:
        """Single-name lookup; raises FetchFailed instead of returning it."""
        outcome = self.fetch([name])[name]
        if isinstance(outcome, FetchFailed):
            raise outcome
        return outcome

    def search(self, query: str, by: str = "name-desc") -> List[PackageRecord]:
        params = [("v", RPC_VERSION), ("type", "search"), ("by", by), ("arg", query)]
        data = self._request(params, query)
        records = []
        for rec in data.get("results") or []:
            try:
                records.append(record_from_rpc(rec))
            except (KeyError, MalformedVersion) as e:
                LOGGER.warning(f"Skipping malformed search result {rec.get('Name')}: {e}")
        return records

    def search_providers(self, name: str) -> List[PackageRecord]:
        """Full records of AUR packages that list ``name`` in their provides."""
        hits = self.search(name, by="provides")
        outcomes = self.fetch(rec.name for rec in hits)
        providers = []
        for outcome in outcomes.values():
            if isinstance(outcome, FetchFailed):
                raise outcome
            if outcome is not None and any(p.name == name for p in outcome.provides):
                providers.append(outcome)
        return providers
