"""Async REST client for the hosted Supabase backend.

Covers the two HTTP APIs the portal uses:
- PostgREST (/rest/v1): filtered selects, inserts, updates and RPC calls
- GoTrue (/auth/v1): password/refresh token grants, sign-up and logout

Error responses are raised as BackendError carrying the status code and
the backend's error code (e.g. PGRST116 for "no rows" on a single select).
"""

import logging
from typing import Any, Callable, Dict, Optional
import httpx

from ..core.errors import BackendError

logger = logging.getLogger(__name__)

OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"


def eq(value: Any) -> str:
    """PostgREST equality filter value"""
    return f"eq.{value}"


class SupabaseRestClient:
    """Thin httpx wrapper around Supabase's REST endpoints"""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize Supabase REST client.

        Args:
            base_url: Project URL (e.g., https://abc.supabase.co)
            anon_key: Anonymous API key sent as `apikey`
            token_provider: Returns the signed-in user's access token, used
                for row-level security on PostgREST calls
            http_client: Pre-built httpx client (tests inject a MockTransport)
            timeout: Default request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.token_provider = token_provider
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(f"Initialized SupabaseRestClient for {self.base_url}")

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, str]] = None,
        columns: str = "*",
        order: Optional[str] = None,
        single: bool = False,
    ) -> Any:
        """
        Query rows from a table.

        Args:
            table: Table name
            filters: PostgREST filters, e.g. {"clinic_id": "eq.c1"}
            columns: Select expression (may embed related tables)
            order: Ordering, e.g. "created_at.desc"
            single: Expect exactly one row (object response)

        Returns:
            List of rows, or a single row dict when single=True

        Raises:
            BackendError: On an error response (PGRST116 when single=True
                matched no rows)
        """
        params: Dict[str, str] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order

        headers = {"Accept": OBJECT_MEDIA_TYPE} if single else {}
        return await self._send("GET", f"/rest/v1/{table}", params=params, headers=headers)

    async def insert(self, table: str, row: Dict[str, Any]) -> Any:
        """Insert a row and return the stored representation"""
        return await self._send(
            "POST",
            f"/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )

    async def update(self, table: str, values: Dict[str, Any], filters: Dict[str, str]) -> Any:
        """Update rows matching filters and return them"""
        return await self._send(
            "PATCH",
            f"/rest/v1/{table}",
            params=filters,
            json=values,
            headers={"Prefer": "return=representation"},
        )

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a Postgres function exposed through PostgREST"""
        return await self._send("POST", f"/rest/v1/rpc/{function}", json=params or {})

    async def auth_token(self, grant_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Request a session from GoTrue (grant_type: password or refresh_token)"""
        return await self._send(
            "POST",
            "/auth/v1/token",
            params={"grant_type": grant_type},
            json=payload,
            use_anon_key=True,
        )

    async def auth_signup(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._send(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": data or {}},
            use_anon_key=True,
        )

    async def auth_logout(self, access_token: str) -> None:
        await self._send(
            "POST",
            "/auth/v1/logout",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, use_anon_key: bool, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        token = None
        if not use_anon_key and self.token_provider is not None:
            token = self.token_provider()

        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
        }
        headers.update(extra or {})
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        use_anon_key: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        response = await self._client.request(
            method,
            url,
            params=params,
            json=json,
            headers=self._headers(use_anon_key, headers),
        )

        if response.is_error:
            error = self._error_from_response(response)
            logger.debug(
                f"{method} {path} -> {response.status_code} "
                f"(code={error.code}): {error.message}"
            )
            raise error

        logger.debug(f"{method} {path} -> {response.status_code}")

        if not response.content:
            return None
        return response.json()

    def _error_from_response(self, response: httpx.Response) -> BackendError:
        """Normalize PostgREST and GoTrue error bodies"""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = (
            body.get("message")
            or body.get("msg")
            or body.get("error_description")
            or body.get("error")
            or response.text
            or f"HTTP {response.status_code}"
        )
        code = body.get("code") or body.get("error_code")

        return BackendError(
            message=str(message),
            status_code=response.status_code,
            code=str(code) if code is not None else None,
        )
