"""
Persisted key/value stores and portfolio repositories.

The key/value stores back the second tier of `cache.TieredCache`; the
repositories implement the portfolio read interface used by the series
builder and the comparison orchestrator.
"""

import json
import hashlib
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

from models import FetchErrorKind, Portfolio, PortfolioHolding, PortfolioLookup
from utils import create_pooled_session

logger = logging.getLogger(__name__)


class PersistenceNotConfiguredError(RuntimeError):
    """Raised by every operation of a persistence client built without credentials."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Tuple[Any, float]]: ...

    def upsert(self, key: str, value: Any, expires_at: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_expired(self, now: float) -> int: ...


class PortfolioRepository(Protocol):
    def get_portfolio(self, portfolio_id: str) -> PortfolioLookup: ...


def _to_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def _from_iso(value: str) -> float:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# ============================================================================
# KEY/VALUE STORES
# ============================================================================


class FileKeyValueStore:
    """JSON file per key, named by the MD5 digest of the key."""

    def __init__(self, cache_dir: str = "./.cache") -> None:
        """
        Initializes the store, creating the cache directory if needed.

        Args:
            cache_dir (str): Directory for cache files. Must resolve inside the
                working directory, the home directory or the temp directory.

        Raises:
            ValueError: If the directory is outside those locations.
        """
        self.cache_dir = Path(cache_dir).resolve()

        cwd = Path.cwd().resolve()
        if not self._is_safe_subpath(self.cache_dir, cwd):
            home_dir = Path.home().resolve()
            temp_dir = Path(tempfile.gettempdir()).resolve()

            if not (
                self._is_safe_subpath(self.cache_dir, home_dir)
                or self._is_safe_subpath(self.cache_dir, temp_dir)
            ):
                raise ValueError(
                    f"Cache directory must be within current working directory, "
                    f"home directory, or temp directory. Got: {cache_dir}"
                )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        logger.debug(f"File cache store initialized: {self.cache_dir}")

    @staticmethod
    def _is_safe_subpath(path: Path, parent: Path) -> bool:
        """Check if path is safely within parent directory."""
        try:
            path.relative_to(parent)
            return True
        except ValueError:
            return False

    @staticmethod
    def _hash_key(key: str) -> str:
        # MD5 hex digests contain only [0-9a-f], so no path separators are possible
        return hashlib.md5(key.encode()).hexdigest()

    @staticmethod
    def _validate_hashed_key(hashed_key: str) -> None:
        """
        Validate a hashed key before using it in path construction.

        Raises:
            ValueError: If the key is not a 32-character hex digest.
        """
        if len(hashed_key) != 32:
            raise ValueError(f"Invalid cache key length: {len(hashed_key)} (expected 32)")
        if not all(c in "0123456789abcdef" for c in hashed_key):
            raise ValueError(
                f"Cache key contains invalid characters. "
                f"Only hexadecimal [0-9a-f] allowed: {hashed_key[:10]}..."
            )

    def _get_path(self, key: str) -> Path:
        """
        Get the file path for a key, verifying it stays inside the cache directory.

        Raises:
            ValueError: If path validation fails.
        """
        hashed_key = self._hash_key(key)
        self._validate_hashed_key(hashed_key)

        cache_path = (self.cache_dir / f"{hashed_key}.json").resolve()
        try:
            cache_path.relative_to(self.cache_dir)
        except ValueError:
            raise ValueError(
                f"Security violation: Cache path outside cache directory. "
                f"Path: {cache_path}, Cache dir: {self.cache_dir}"
            )
        return cache_path

    def get(self, key: str) -> Optional[Tuple[Any, float]]:
        with self._lock:
            path = self._get_path(key)
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as f:
                    payload = json.load(f)
                return payload["value"], float(payload["expires_at"])
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.debug(f"Corrupted cache file for {key}, removing: {e}")
                path.unlink(missing_ok=True)
                return None

    def upsert(self, key: str, value: Any, expires_at: float) -> None:
        payload = {"key": key, "value": value, "expires_at": expires_at}
        with self._lock:
            path = self._get_path(key)
            tmp_path = path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(payload, f)
            tmp_path.replace(path)

    def delete(self, key: str) -> None:
        with self._lock:
            self._get_path(key).unlink(missing_ok=True)

    def delete_expired(self, now: float) -> int:
        """
        Deletes expired and unreadable cache files.

        Returns:
            int: The number of deleted files.
        """
        cleared = 0
        with self._lock:
            for cache_file in self.cache_dir.glob("*.json"):
                try:
                    with cache_file.open("r", encoding="utf-8") as f:
                        expires_at = float(json.load(f)["expires_at"])
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    expires_at = None
                except OSError as e:
                    logger.debug(f"Failed to read cache file {cache_file}: {e}")
                    continue

                if expires_at is None or now > expires_at:
                    try:
                        cache_file.unlink()
                        cleared += 1
                    except OSError as e:
                        logger.debug(f"Failed to clear cache file {cache_file}: {e}")
        return cleared


class SupabaseRestClient:
    """
    Minimal PostgREST client for a Supabase project.

    Built without a URL or key, every operation raises
    PersistenceNotConfiguredError.
    """

    def __init__(
        self,
        url: Optional[str],
        key: Optional[str],
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url.rstrip("/") if url else None
        self._key = key
        self.timeout = timeout
        self.session = session
        if self.configured and self.session is None:
            self.session = create_pooled_session()

    @property
    def configured(self) -> bool:
        return bool(self.url and self._key)

    def _require_configured(self) -> None:
        if not self.configured:
            raise PersistenceNotConfiguredError(
                "Supabase is not configured (set SUPABASE_URL and SUPABASE_KEY)"
            )

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _table_url(self, table: str) -> str:
        return f"{self.url}/rest/v1/{table}"

    def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._require_configured()
        response = self.session.get(
            self._table_url(table),
            params=params,
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> None:
        self._require_configured()
        response = self.session.post(
            self._table_url(table),
            params={"on_conflict": on_conflict},
            data=json.dumps(row),
            headers=self._headers("resolution=merge-duplicates,return=minimal"),
            timeout=self.timeout,
        )
        response.raise_for_status()

    def delete(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._require_configured()
        response = self.session.delete(
            self._table_url(table),
            params=params,
            headers=self._headers("return=representation"),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json() if response.content else []

    def close(self) -> None:
        if self.session is not None:
            self.session.close()


class SupabaseKeyValueStore:
    """Key/value store on the `api_cache` table."""

    TABLE = "api_cache"

    def __init__(self, client: SupabaseRestClient) -> None:
        self.client = client

    def get(self, key: str) -> Optional[Tuple[Any, float]]:
        rows = self.client.select(
            self.TABLE,
            {"select": "cache_value,expires_at", "cache_key": f"eq.{key}", "limit": 1},
        )
        if not rows:
            return None
        row = rows[0]
        expires_at = row.get("expires_at") if isinstance(row, dict) else None
        if not isinstance(expires_at, str) or "cache_value" not in row:
            logger.debug(f"Malformed api_cache row for {key}, treating as miss")
            return None
        try:
            return row["cache_value"], _from_iso(expires_at)
        except ValueError as e:
            logger.debug(f"Unparseable expires_at for {key}, treating as miss: {e}")
            return None

    def upsert(self, key: str, value: Any, expires_at: float) -> None:
        self.client.upsert(
            self.TABLE,
            {"cache_key": key, "cache_value": value, "expires_at": _to_iso(expires_at)},
            on_conflict="cache_key",
        )

    def delete(self, key: str) -> None:
        self.client.delete(self.TABLE, {"cache_key": f"eq.{key}"})

    def delete_expired(self, now: float) -> int:
        deleted = self.client.delete(self.TABLE, {"expires_at": f"lt.{_to_iso(now)}"})
        return len(deleted)


# ============================================================================
# PORTFOLIO REPOSITORIES
# ============================================================================


def _holdings_from_entries(portfolio_id: str, entries: List[Dict[str, Any]]) -> List[PortfolioHolding]:
    """
    Converts stored holdings to PortfolioHolding records.

    Accepts both `{symbol, allocation}` entries and team slots of the form
    `{asset: {symbol}, allocation}`. Empty slots are ignored.
    """
    holdings = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        asset = entry.get("asset")
        symbol = asset.get("symbol") if isinstance(asset, dict) else entry.get("symbol")
        if not symbol:
            continue
        try:
            allocation = float(entry.get("allocation", 0))
        except (TypeError, ValueError):
            logger.warning(f"Portfolio {portfolio_id}: invalid allocation for {symbol}, skipping")
            continue
        holdings.append(PortfolioHolding(symbol=str(symbol).strip().upper(), allocation=allocation))
    return holdings


def _lookup_from_holdings(
    portfolio_id: str, name: str, holdings: List[PortfolioHolding], created_at: Optional[str]
) -> PortfolioLookup:
    if not holdings:
        return PortfolioLookup(
            error_kind=FetchErrorKind.NOT_FOUND,
            error=f"Portfolio {portfolio_id} has no holdings",
        )
    return PortfolioLookup(
        portfolio=Portfolio(id=portfolio_id, name=name, holdings=holdings, created_at=created_at)
    )


class SupabasePortfolioRepository:
    """Reads portfolios from the `portfolios` table."""

    TABLE = "portfolios"

    def __init__(self, client: SupabaseRestClient) -> None:
        self.client = client

    def get_portfolio(self, portfolio_id: str) -> PortfolioLookup:
        try:
            rows = self.client.select(
                self.TABLE,
                {"select": "id,name,players,created_at", "id": f"eq.{portfolio_id}", "limit": 1},
            )
        except PersistenceNotConfiguredError as e:
            return PortfolioLookup(error_kind=FetchErrorKind.NOT_CONFIGURED, error=str(e))
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Failed to load portfolio {portfolio_id}: {e}")
            return PortfolioLookup(error_kind=FetchErrorKind.PROVIDER_ERROR, error=str(e))

        if not rows:
            return PortfolioLookup(
                error_kind=FetchErrorKind.NOT_FOUND, error=f"Portfolio {portfolio_id} not found"
            )

        row = rows[0]
        players = row.get("players") or []
        if isinstance(players, str):
            try:
                players = json.loads(players)
            except json.JSONDecodeError as e:
                return PortfolioLookup(
                    error_kind=FetchErrorKind.PROVIDER_ERROR,
                    error=f"Portfolio {portfolio_id} has malformed players: {e}",
                )

        return _lookup_from_holdings(
            str(row.get("id", portfolio_id)),
            row.get("name") or str(portfolio_id),
            _holdings_from_entries(portfolio_id, players),
            row.get("created_at"),
        )


class JsonPortfolioRepository:
    """
    Portfolios from a local JSON file mapping ids to
    `{name, created_at, holdings: [{symbol, allocation}]}`.
    """

    def __init__(self, path: str) -> None:
        """
        Loads the portfolio file eagerly.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the file is not valid JSON or not an object.
        """
        self.path = Path(path)
        with self.path.open("r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid portfolio file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Portfolio file {self.path} must contain a JSON object")

        # Allow the mapping to sit under a top-level "portfolios" key
        portfolios = data.get("portfolios", data)
        if not isinstance(portfolios, dict):
            raise ValueError(
                f"Portfolio file {self.path}: 'portfolios' must map ids to portfolio objects"
            )
        self._portfolios: Dict[str, Dict[str, Any]] = portfolios
        logger.debug(f"Loaded {len(self._portfolios)} portfolios from {self.path}")

    def get_portfolio(self, portfolio_id: str) -> PortfolioLookup:
        entry = self._portfolios.get(portfolio_id)
        if not isinstance(entry, dict):
            return PortfolioLookup(
                error_kind=FetchErrorKind.NOT_FOUND, error=f"Portfolio {portfolio_id} not found"
            )
        entries = entry.get("holdings", entry.get("players", []))
        return _lookup_from_holdings(
            portfolio_id,
            entry.get("name") or portfolio_id,
            _holdings_from_entries(portfolio_id, entries),
            entry.get("created_at"),
        )


class UnconfiguredPortfolioRepository:
    """Used when no portfolio source is available."""

    def get_portfolio(self, portfolio_id: str) -> PortfolioLookup:
        return PortfolioLookup(
            error_kind=FetchErrorKind.NOT_CONFIGURED,
            error="No portfolio source configured (use --portfolio-file or set SUPABASE_URL/SUPABASE_KEY)",
        )
