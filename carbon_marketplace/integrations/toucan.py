"""Toucan Protocol subgraph integration (GraphQL over HTTP).

Endpoint: https://api.thegraph.com/subgraphs/name/toucanprotocol/matic
TCO2 tokens are normalized into Projects; the BCT/NCT pools into Portfolios.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from carbon_marketplace.errors import ApiError, ValidationError
from carbon_marketplace.integrations.base_client import BaseApiClient
from carbon_marketplace.schemas import Portfolio, Project, TokenPrice

logger = logging.getLogger(__name__)

BASE_URL = "https://api.thegraph.com"
SUBGRAPH_PATH = "subgraphs/name/toucanprotocol/matic"

POOLS = {
    "BCT": {
        "address": "0x2f800db0fdb5223b3c3f354886d907a671414a7f",
        "name": "Base Carbon Tonne",
        "description": "Toucan Base Carbon Tonne pool of verified carbon credits",
    },
    "NCT": {
        "address": "0xd838290e877e0188a4a44700463419ed96c16107",
        "name": "Nature Carbon Tonne",
        "description": "Toucan Nature Carbon Tonne pool of nature-based carbon credits",
    },
}

TOKEN_DECIMALS = 10 ** 18

_PROJECT_FIELDS = """
    id
    projectId
    standard
    methodology
    region
    storageMethod
    method
    emissionType
    category
    uri
"""

_TOKEN_FIELDS = f"""
    id
    name
    symbol
    address
    createdAt
    totalSupply
    projectVintage {{
        id
        name
        startTime
        endTime
        project {{ {_PROJECT_FIELDS} }}
    }}
"""

QUERY_META = "{ _meta { block { number } } }"

QUERY_TOKENS = f"""
query Tokens($first: Int!, $skip: Int!) {{
    tco2Tokens(first: $first, skip: $skip, orderBy: createdAt, orderDirection: desc) {{
        {_TOKEN_FIELDS}
        poolBalances {{ pool {{ id name symbol }} balance }}
    }}
}}
"""

QUERY_TOKEN_BY_ID = f"""
query Token($id: ID!) {{
    tco2Token(id: $id) {{
        {_TOKEN_FIELDS}
        poolBalances {{ pool {{ id name symbol }} balance }}
    }}
}}
"""

QUERY_POOL_CONTENTS = f"""
query PoolContents($pool: String!, $first: Int!) {{
    pooledTCO2Tokens(where: {{ pool: $pool }}, first: $first, orderBy: amount, orderDirection: desc) {{
        id
        amount
        token {{ {_TOKEN_FIELDS} }}
        pool {{ id name symbol totalSupply }}
    }}
}}
"""

QUERY_SWAPS = """
query Swaps($token: String!) {
    swaps(
        where: { or: [{ token0: $token }, { token1: $token }] }
        first: 10
        orderBy: timestamp
        orderDirection: desc
    ) {
        id
        timestamp
        token0 { id symbol decimals }
        token1 { id symbol decimals }
        amount0In
        amount0Out
        amount1In
        amount1Out
        amountUSD
    }
}
"""


class ToucanClient(BaseApiClient):
    """Async client for the Toucan Protocol subgraph."""

    vendor = "toucan"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = BASE_URL,
        timeout: int = 30,
        max_retries: int = 3,
    ):
        super().__init__(
            base_url,
            credentials={"api_key": api_key},
            timeout=timeout,
            max_retries=max_retries,
            rate_limits={"requests_per_second": 2, "burst": 5},
        )

    def get_auth_headers(self) -> dict[str, str]:
        if self.credentials.get("api_key"):
            return {"Authorization": f"Bearer {self.credentials['api_key']}"}
        return {}

    async def execute_graphql_query(self, query: str, variables: dict[str, Any] | None = None) -> dict:
        """POST a GraphQL query and return its `data` object."""
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        response = await self.make_request("POST", SUBGRAPH_PATH, payload, use_cache=True)

        if not isinstance(response, dict):
            raise ApiError("graphql_error", "Unexpected subgraph response", endpoint=SUBGRAPH_PATH)
        if response.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in response["errors"])
            raise ApiError(
                "graphql_error", messages[:300],
                response_data=response["errors"], endpoint=SUBGRAPH_PATH,
            )
        return response.get("data") or {}

    async def validate_credentials(self) -> bool:
        data = await self.execute_graphql_query(QUERY_META)
        if not data.get("_meta"):
            raise ApiError("invalid_response", "Subgraph did not return block metadata")
        return True

    # ═══════════════ TOKENS ═══════════════

    async def fetch_all_tco2_tokens(self, limit: int = 100, skip: int = 0) -> list[Project]:
        start = time.monotonic()
        data = await self.execute_graphql_query(
            QUERY_TOKENS, {"first": int(limit), "skip": int(skip)},
        )
        tokens = data.get("tco2Tokens") or []
        logger.info(
            "Toucan tokens OK | results=%d | %dms",
            len(tokens), int((time.monotonic() - start) * 1000),
        )
        return [self._parse_token(t) for t in tokens]

    async def fetch_tco2_token_by_id(self, token_id: str) -> Project:
        if not token_id:
            raise ValidationError("Token ID is required", code="invalid_token_id")
        data = await self.execute_graphql_query(QUERY_TOKEN_BY_ID, {"id": token_id.lower()})
        token = data.get("tco2Token")
        if not token:
            raise ApiError("token_not_found", f"TCO2 token {token_id} not found", status_code=404)
        return self._parse_token(token)

    async def get_project_details(self, project_id: str) -> Project:
        return await self.fetch_tco2_token_by_id(project_id)

    async def fetch_pool_contents(self, pool_address: str, limit: int = 100) -> list[Project]:
        if not pool_address:
            raise ValidationError("Pool address is required", code="invalid_pool_address")
        data = await self.execute_graphql_query(
            QUERY_POOL_CONTENTS, {"pool": pool_address.lower(), "first": int(limit)},
        )
        projects = []
        for entry in data.get("pooledTCO2Tokens") or []:
            token = entry.get("token") or {}
            if not token:
                continue
            project = self._parse_token(token)
            project.available_quantity = _token_units(entry.get("amount"))
            project.metadata["pool"] = (entry.get("pool") or {}).get("symbol", "")
            projects.append(project)
        return projects

    async def fetch_token_price_on_dex(self, token_address: str) -> TokenPrice:
        if not token_address:
            raise ValidationError("Token address is required", code="invalid_token_address")
        address = token_address.lower()
        data = await self.execute_graphql_query(QUERY_SWAPS, {"token": address})
        swaps = data.get("swaps") or []
        if not swaps:
            raise ApiError("no_price_data", "No recent price data available", status_code=404)
        return _calculate_token_price(address, swaps)

    async def get_available_pools(self) -> list[Portfolio]:
        return [
            Portfolio(
                id=info["address"],
                vendor=self.vendor,
                name=info["name"],
                description=info["description"],
                metadata={"symbol": symbol, "pool_address": info["address"]},
            )
            for symbol, info in POOLS.items()
        ]

    async def get_portfolios(self) -> list[Portfolio]:
        return await self.get_available_pools()

    # ═══════════════ PARSING ═══════════════

    def _parse_token(self, token: dict) -> Project:
        """Parse a TCO2 token into the shared Project model."""
        vintage = token.get("projectVintage") or {}
        project = vintage.get("project") or {}

        description_parts = []
        if project.get("methodology"):
            description_parts.append(f"Methodology: {project['methodology']}")
        if project.get("standard"):
            description_parts.append(f"Standard: {project['standard']}")
        start_year = _year(vintage.get("startTime"))
        end_year = _year(vintage.get("endTime"))
        if start_year:
            span = f"{start_year} to {end_year}" if end_year and end_year != start_year else start_year
            description_parts.append(f"Vintage: {span}")
        if project.get("emissionType"):
            description_parts.append(f"Emission Type: {project['emissionType']}")

        token_id = str(token.get("id") or token.get("address") or "")
        registry_url = project.get("uri") or ""
        if registry_url and not registry_url.startswith(("http://", "https://")):
            registry_url = ""

        return Project(
            id=token_id,
            vendor=self.vendor,
            name=vintage.get("name") or token.get("name") or token_id,
            description=" | ".join(description_parts),
            location=project.get("region") or "",
            project_type=project.get("category") or "",
            methodology=project.get("methodology") or "",
            price_per_kg=0.0,
            available_quantity=_token_units(token.get("totalSupply")),
            registry_url=registry_url,
            metadata={
                "token_address": token.get("address") or token_id,
                "symbol": token.get("symbol", ""),
                "project_id": project.get("projectId", ""),
                "standard": project.get("standard", ""),
                "vintage_start": start_year,
                "vintage_end": end_year,
                "emission_type": project.get("emissionType", ""),
                "storage_method": project.get("storageMethod", ""),
                "pool_balances": [
                    {
                        "pool": (b.get("pool") or {}).get("symbol", ""),
                        "balance": _token_units(b.get("balance")),
                    }
                    for b in token.get("poolBalances") or []
                ],
            },
        )


def _token_units(raw: Any) -> int:
    """Convert an 18-decimal on-chain amount to whole tokens."""
    try:
        return max(int(float(raw or 0) / TOKEN_DECIMALS), 0)
    except (TypeError, ValueError):
        return 0


def _year(timestamp: Any) -> str:
    try:
        return str(datetime.fromtimestamp(int(timestamp), tz=timezone.utc).year)
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def _calculate_token_price(address: str, swaps: list[dict]) -> TokenPrice:
    total_usd = 0.0
    total_tokens = 0.0
    volume_24h = 0.0
    cutoff = time.time() - 86400

    for swap in swaps:
        amount_usd = float(swap.get("amountUSD") or 0)
        if (swap.get("token0") or {}).get("id", "").lower() == address:
            amount = float(swap.get("amount0In") or 0) + float(swap.get("amount0Out") or 0)
        else:
            amount = float(swap.get("amount1In") or 0) + float(swap.get("amount1Out") or 0)
        if amount <= 0:
            continue
        total_usd += amount_usd
        total_tokens += amount
        if int(swap.get("timestamp") or 0) >= cutoff:
            volume_24h += amount_usd

    if total_tokens <= 0:
        raise ApiError("no_price_data", "Swaps carried no token volume", status_code=404)

    return TokenPrice(
        token_address=address,
        price_usd=total_usd / total_tokens,
        volume_24h=volume_24h,
        data_source="toucan_dex_swaps",
    )
