import re
import time
import asyncio
import logging
from typing import List, Dict, Any, Optional, Callable, Awaitable, FrozenSet

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("context_chat.webflow")


# -----------------------------
# Configuration
# -----------------------------
class WebflowConfig(BaseModel):
    api_token: str = ""
    base_url: str = "https://api.webflow.com/v2"
    site_id: str = "674045e3bdb2d16d7e73efd5"
    page_id: str = "679528029097b958606ec2ed"
    case_studies_collection: str = "67405a6bc01960d426e5da3f"
    system_prompt_collection: str = "67409359ef24c542fe79ed6c"
    system_prompt_item: str = "674093e0ef24c542fe7a83b1"
    timeout: float = 30.0


# -----------------------------
# Errors
# -----------------------------
class WebflowError(Exception):
    pass


class WebflowConfigError(WebflowError):
    pass


class WebflowFetchError(WebflowError):
    def __init__(self, endpoint: str, message: str):
        super().__init__(f"Failed to fetch {endpoint}: {message}")
        self.endpoint = endpoint
        self.message = message


class ComponentCycleError(WebflowError):
    def __init__(self, chain: List[str]):
        super().__init__("Component cycle detected: " + " -> ".join(chain))
        self.chain = chain


# -----------------------------
# Data model
# -----------------------------
class NodeText(BaseModel):
    html: Optional[str] = ""
    text: Optional[str] = ""


class DocumentNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = ""
    component_id: Optional[str] = Field(default=None, alias="componentId")
    children: Optional[List["DocumentNode"]] = None
    text: Optional[NodeText] = None


class PageContent(BaseModel):
    title: str
    slug: str
    content: str = ""


class CaseStudy(BaseModel):
    title: str
    slug: str
    content: str = ""


class SystemPromptSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    style_guidelines: str = Field(default="", alias="styleGuidelines")
    question_patterns: str = Field(default="", alias="questionPatterns")


class FetchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pages: Dict[str, PageContent] = Field(default_factory=dict)
    case_studies: Dict[str, CaseStudy] = Field(default_factory=dict, alias="caseStudies")
    system_prompt: SystemPromptSettings = Field(default_factory=SystemPromptSettings, alias="systemPrompt")

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


# -----------------------------
# Text helpers
# -----------------------------
PAGE_TITLE_MARKER = 'class="page-title"'
COMPONENT_INSTANCE = "component-instance"

_BLOCK_RE = re.compile(r"(?is)<(script|style|figure)\b[^>]*>.*?</\1\s*>")
_BREAK_TAG_RE = re.compile(
    r"(?i)</?(p|div|br|li|ul|ol|h[1-6]|tr|td|th|table|section|blockquote)\b[^>]*>"
)
_TAG_RE = re.compile(r"(?s)<[^>]*>")
_WF_RESERVED_RE = re.compile(
    r"\[__wf_reserved_inherit\]\(https://cdn\.prod\.website-files\.com/[^)]*\)"
)
_MARKDOWN_CHARS_RE = re.compile(r"[\[\]*_]")
_URL_PAREN_RE = re.compile(r"\(https?://[^)]+\)")


def normalize_html(html: Optional[str]) -> str:
    """Reduce a rich-text HTML fragment to a single line of plain text.

    Script, style and figure blocks are dropped with their content, every
    other tag is stripped, ``&nbsp;`` becomes a space and whitespace runs
    collapse. Malformed markup never raises; it just degrades to text.
    """
    if not html:
        return ""
    s = _BLOCK_RE.sub(" ", html)
    # Block-level tags separate words; inline tags (<b>, <a>, <span>) must not split them.
    s = _BREAK_TAG_RE.sub(" ", s)
    s = _TAG_RE.sub("", s)
    s = s.replace("&nbsp;", " ")
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def sanitize_content(content: str) -> str:
    return _WF_RESERVED_RE.sub("", content)


def standardize_content(content: str) -> str:
    s = re.sub(r"\s+", " ", content)
    s = re.sub(r"\n\s*\n", "\n", s)
    s = s.strip()
    s = _MARKDOWN_CHARS_RE.sub("", s)
    s = _URL_PAREN_RE.sub("", s)
    return s.strip()


def slugify(title: str) -> str:
    lower_title = title.lower()
    if lower_title == "index":
        return "/in"
    return "/" + re.sub(r"[^a-z0-9]+", "-", lower_title).strip("-")


def coerce_nodes(payload: Any) -> List[DocumentNode]:
    # The DOM endpoints answer either with a bare node list or {"nodes": [...]}.
    if isinstance(payload, dict):
        payload = payload.get("nodes") or []
    if not isinstance(payload, list):
        return []
    return [
        n if isinstance(n, DocumentNode) else DocumentNode.model_validate(n)
        for n in payload
        if isinstance(n, (dict, DocumentNode))
    ]


def coerce_items(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("items") or []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


async def gather_all(*aws: Awaitable[Any]) -> List[Any]:
    """Await every awaitable; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        raise


# -----------------------------
# Component resolution
# -----------------------------
FetchComponent = Callable[[str], Awaitable[List[DocumentNode]]]


class ComponentCache:
    """Component DOMs keyed by componentId, scoped to one ``process_page`` call.

    The in-flight fetch is stored rather than its result, so concurrent
    requests for the same id share a single network call.
    """

    def __init__(self):
        self._entries: Dict[str, "asyncio.Future[List[DocumentNode]]"] = {}

    def __contains__(self, component_id: str) -> bool:
        return component_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_fetch(self, component_id: str, fetch: FetchComponent) -> List[DocumentNode]:
        entry = self._entries.get(component_id)
        if entry is None:
            entry = asyncio.ensure_future(fetch(component_id))
            self._entries[component_id] = entry
        else:
            logger.debug("Component cache hit: %s", component_id)
        return await entry


async def resolve_components(
    nodes: List[DocumentNode],
    fetch_component: FetchComponent,
    cache: ComponentCache,
    _chain: FrozenSet[str] = frozenset(),
    _path: Optional[List[str]] = None,
) -> List[DocumentNode]:
    path = _path or []

    async def resolve_node(node: DocumentNode) -> DocumentNode:
        if node.type == COMPONENT_INSTANCE and node.component_id:
            component_id = node.component_id
            if component_id in _chain:
                raise ComponentCycleError(path + [component_id])
            component_nodes = await cache.get_or_fetch(component_id, fetch_component)
            children = await resolve_components(
                component_nodes,
                fetch_component,
                cache,
                _chain | {component_id},
                path + [component_id],
            )
            return node.model_copy(update={"children": children})

        if node.children:
            children = await resolve_components(node.children, fetch_component, cache, _chain, path)
            return node.model_copy(update={"children": children})

        return node

    return await gather_all(*(resolve_node(n) for n in nodes))


# -----------------------------
# Extraction & transforms
# -----------------------------
def extract_content(nodes: List[DocumentNode]) -> Dict[str, PageContent]:
    pages: Dict[str, PageContent] = {}
    current_page: Optional[str] = None

    # Explicit stack keeps deep component nesting off the interpreter's recursion limit.
    stack = list(reversed(nodes))
    while stack:
        node = stack.pop()
        html = node.text.html if node.text else None
        if node.type == "text" and html:
            if PAGE_TITLE_MARKER in html:
                current_page = (node.text.text or "").strip()
                # A repeated title starts over but keeps its first-seen position.
                pages[current_page] = PageContent(title=current_page, slug=slugify(current_page))
            elif current_page:
                pages[current_page].content += sanitize_content(normalize_html(html)) + "\n"
        if node.children:
            stack.extend(reversed(node.children))

    for page in pages.values():
        page.content = standardize_content(page.content)
    return pages


def transform_case_studies(items: List[Dict[str, Any]]) -> Dict[str, CaseStudy]:
    case_studies: Dict[str, CaseStudy] = {}
    for item in items:
        field_data = item.get("fieldData") or {}
        title = (field_data.get("name") or "").strip()
        case_studies[title.lower()] = CaseStudy(
            title=title,
            slug=f"/casestudies/{field_data.get('slug') or ''}",
            content=sanitize_content(normalize_html(field_data.get("content") or "")),
        )
    return case_studies


def transform_system_prompt(item: Optional[Dict[str, Any]]) -> SystemPromptSettings:
    field_data = (item or {}).get("fieldData") or {}
    return SystemPromptSettings(
        style_guidelines=field_data.get("style-guidelines") or "",
        question_patterns=field_data.get("specific-question-patterns") or "",
    )


# -----------------------------
# Orchestrator
# -----------------------------
class WebflowFetcher:
    def __init__(self, config: WebflowConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not config.api_token:
            raise WebflowConfigError("WEBFLOW_API_TOKEN environment variable is not set")
        for name in ("site_id", "page_id", "case_studies_collection",
                     "system_prompt_collection", "system_prompt_item"):
            if not getattr(config, name):
                raise WebflowConfigError(f"Missing Webflow identifier: {name}")
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {self.config.api_token}",
                "Accept": "application/json",
            },
            timeout=self.config.timeout,
            transport=self._transport,
        )

    async def fetch_data(self, client: httpx.AsyncClient, endpoint: str) -> Any:
        logger.debug("GET %s", endpoint)
        try:
            response = await client.get(endpoint)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise WebflowFetchError(
                endpoint, f"HTTP {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.RequestError as exc:
            raise WebflowFetchError(endpoint, str(exc) or exc.__class__.__name__) from exc
        except ValueError as exc:
            raise WebflowFetchError(endpoint, f"invalid JSON body ({exc})") from exc

    async def fetch_document_tree(self, client: httpx.AsyncClient, page_id: str) -> List[DocumentNode]:
        return coerce_nodes(await self.fetch_data(client, f"pages/{page_id}/dom"))

    async def fetch_component_tree(self, client: httpx.AsyncClient, component_id: str) -> List[DocumentNode]:
        return coerce_nodes(
            await self.fetch_data(client, f"sites/{self.config.site_id}/components/{component_id}/dom")
        )

    async def fetch_collection_items(self, client: httpx.AsyncClient, collection_id: str) -> List[Dict[str, Any]]:
        return coerce_items(await self.fetch_data(client, f"collections/{collection_id}/items/live"))

    async def fetch_collection_item(self, client: httpx.AsyncClient, collection_id: str, item_id: str) -> Dict[str, Any]:
        data = await self.fetch_data(client, f"collections/{collection_id}/items/{item_id}/live")
        return data if isinstance(data, dict) else {}

    async def process_page(self, page_id: Optional[str] = None) -> FetchResult:
        """Fetch the page DOM, case studies and system prompt, and build the context document.

        Any upstream failure aborts the whole call; no partial result is returned.
        """
        page_id = page_id or self.config.page_id
        t0 = time.perf_counter()
        cache = ComponentCache()

        async with self._client() as client:
            async def fetch_component(component_id: str) -> List[DocumentNode]:
                return await self.fetch_component_tree(client, component_id)

            nodes, case_study_items, system_prompt_item = await gather_all(
                self.fetch_document_tree(client, page_id),
                self.fetch_collection_items(client, self.config.case_studies_collection),
                self.fetch_collection_item(
                    client, self.config.system_prompt_collection, self.config.system_prompt_item
                ),
            )
            resolved = await resolve_components(nodes, fetch_component, cache)

        result = FetchResult(
            pages=extract_content(resolved),
            case_studies=transform_case_studies(case_study_items),
            system_prompt=transform_system_prompt(system_prompt_item),
        )
        logger.info(
            "Processed Webflow page %s: %d pages, %d case studies, %d components (%dms)",
            page_id,
            len(result.pages),
            len(result.case_studies),
            len(cache),
            round((time.perf_counter() - t0) * 1000),
        )
        return result
