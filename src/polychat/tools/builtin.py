"""
Built-in tools available to every conversation.
"""

import ast
import asyncio
import operator
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import structlog
from bs4 import BeautifulSoup

from .base import ToolDescriptor, ToolParameter

logger = structlog.get_logger()

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

MAX_EXPONENT = 1000


def _evaluate(node: ast.AST) -> float | int:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ValueError("Exponent too large")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


async def calculator(expression: str) -> dict[str, Any]:
    """Evaluate an arithmetic expression without eval()."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {expression}") from e
    result = _evaluate(tree)
    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return {"expression": expression, "result": result}


async def get_datetime(format: str = "ISO", timezone_name: str | None = None, **kwargs: Any) -> dict[str, Any]:
    """Current date and time as ISO, UTC or locale text."""
    timezone_name = timezone_name or kwargs.get("timezone")
    tz = timezone.utc
    if timezone_name:
        try:
            tz = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Unknown timezone: {timezone_name}") from e

    now = datetime.now(tz)
    fmt = (format or "ISO").upper()
    if fmt == "UTC":
        text = now.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")
    elif fmt == "LOCALE":
        text = now.strftime("%c")
    else:
        text = now.isoformat()

    return {
        "datetime": text,
        "timestamp": int(now.timestamp() * 1000),
        "timezone": timezone_name or "UTC",
    }


async def browse_webpage(url: str, extract_links: bool = False) -> dict[str, Any]:
    """Fetch a web page and return its main text."""
    async with httpx.AsyncClient(
        timeout=30.0,
        follow_redirects=True,
        headers={
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
        },
    ) as client:
        response = await client.get(url)
        response.raise_for_status()

    soup = BeautifulSoup(response.text, "html.parser")

    for element in soup(["script", "style", "nav", "footer", "header", "aside"]):
        element.decompose()

    title = soup.title.string if soup.title else "No title"

    main_content = soup.find("main") or soup.find("article") or soup.find("body")
    if main_content:
        text = main_content.get_text(separator="\n", strip=True)
    else:
        text = soup.get_text(separator="\n", strip=True)

    text = "\n".join(line.strip() for line in text.split("\n") if line.strip())

    data: dict[str, Any] = {"title": title, "url": url, "content": text}

    if extract_links:
        links = []
        for a in soup.find_all("a", href=True)[:20]:
            href = a["href"]
            if href.startswith("http"):
                links.append({"text": a.get_text(strip=True)[:100], "url": href})
        data["links"] = links

    return data


def make_web_search(tavily_api_key: str = ""):
    """Build the web_search executor; Tavily when keyed, DuckDuckGo otherwise."""

    async def web_search(query: str, max_results: int = 5) -> dict[str, Any]:
        if tavily_api_key:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    "https://api.tavily.com/search",
                    json={
                        "api_key": tavily_api_key,
                        "query": query,
                        "max_results": max_results,
                        "include_answer": True,
                    },
                    timeout=30.0,
                )
                response.raise_for_status()
                data = response.json()
            return {
                "answer": data.get("answer"),
                "results": [
                    {"title": r.get("title"), "url": r.get("url"), "snippet": (r.get("content") or "")[:500]}
                    for r in data.get("results", [])[:max_results]
                ],
            }

        from duckduckgo_search import DDGS

        def search() -> list[dict[str, Any]]:
            with DDGS() as ddgs:
                return [
                    {"title": r["title"], "url": r["href"], "snippet": r["body"][:500]}
                    for r in ddgs.text(query, max_results=max_results)
                ]

        return {"answer": None, "results": await asyncio.to_thread(search)}

    return web_search


def create_builtin_tools(
    enable_web_search: bool = True,
    enable_browser: bool = True,
    tavily_api_key: str = "",
) -> list[ToolDescriptor]:
    """Descriptors for the built-in tool set."""
    tools = [
        ToolDescriptor.from_parameters(
            name="calculator",
            description="Performs basic arithmetic calculations",
            parameters=[
                ToolParameter(
                    name="expression",
                    param_type="string",
                    description='The arithmetic expression to evaluate (e.g., "2 + 2")',
                ),
            ],
            executor=calculator,
        ),
        ToolDescriptor.from_parameters(
            name="get_datetime",
            description="Returns the current date and time",
            parameters=[
                ToolParameter(
                    name="format",
                    param_type="string",
                    description="Optional format (ISO, UTC, locale)",
                    required=False,
                    enum=["ISO", "UTC", "locale"],
                ),
                ToolParameter(
                    name="timezone",
                    param_type="string",
                    description='Optional timezone identifier (e.g., "America/New_York")',
                    required=False,
                ),
            ],
            executor=get_datetime,
        ),
    ]

    if enable_browser:
        tools.append(ToolDescriptor.from_parameters(
            name="browse_webpage",
            description=(
                "Visit a webpage and extract its content. Use this to read articles, "
                "documentation, or any web page content."
            ),
            parameters=[
                ToolParameter(name="url", param_type="string", description="The URL of the webpage to visit"),
                ToolParameter(
                    name="extract_links",
                    param_type="boolean",
                    description="Whether to extract links from the page (default: false)",
                    required=False,
                    default=False,
                ),
            ],
            executor=browse_webpage,
        ))

    if enable_web_search:
        tools.append(ToolDescriptor.from_parameters(
            name="web_search",
            description=(
                "Search the web for current information, facts or news. "
                "Returns titles, URLs and snippets."
            ),
            parameters=[
                ToolParameter(name="query", param_type="string", description="The search query"),
                ToolParameter(
                    name="max_results",
                    param_type="integer",
                    description="Maximum number of results to return (default: 5)",
                    required=False,
                    default=5,
                ),
            ],
            executor=make_web_search(tavily_api_key),
        ))

    return tools
