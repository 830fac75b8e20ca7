"""Stage 1: infer backend needs (models, endpoints, feature flags) from a layout tree.

Pure and synchronous; no model calls.
"""

import logging
import re

from src.models import FrontendBackendNeeds, InferredDataModel, InferredEndpoint, LayoutManifest, UINode

logger = logging.getLogger(__name__)

AUTH_KEYWORDS = ("login", "signup", "register", "auth", "sign-in", "sign-up", "password", "forgot-password")
SEARCH_KEYWORDS = ("search", "filter", "find", "query", "lookup")
REALTIME_KEYWORDS = ("chat", "message", "notification", "live", "real-time", "realtime", "stream", "feed")
UPLOAD_KEYWORDS = ("upload", "file", "image-upload", "attachment", "drop-zone", "dropzone")
PAGINATION_KEYWORDS = ("pagination", "paginator", "page-nav", "load-more", "infinite-scroll")

_DATA_DISPLAY_TYPES = ("list", "container")
_DATA_DISPLAY_SEMANTICS = ("table", "list", "grid", "card", "chart", "dashboard", "data", "feed")
_FORM_SEMANTICS = ("form", "editor", "create", "edit", "new", "add", "compose")
_FORM_ACTIONS = ("submit", "create", "save")
_INTERACTIVE_TYPES = ("button", "input")
_INTERACTIVE_SEMANTICS = ("select", "checkbox", "radio", "toggle", "switch", "slider", "dropdown")

# UI vocabulary stripped from semantic tags when guessing the domain entity.
_UI_WORDS = frozenset({
    "table", "list", "grid", "card", "form", "display", "view", "panel", "modal", "dialog",
    "section", "container", "wrapper", "layout", "header", "footer", "sidebar", "nav", "menu",
    "btn", "button", "input", "field", "editor", "create", "edit", "new", "add", "compose",
    "submit", "chart", "dashboard", "feed", "item",
})


def _flatten(node: UINode) -> list[UINode]:
    nodes = [node]
    for child in node.children:
        nodes.extend(_flatten(child))
    return nodes


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(kw in text for kw in keywords)


def _is_data_display(node: UINode) -> bool:
    semantic = node.semantic_tag.lower()
    return node.type.lower() in _DATA_DISPLAY_TYPES and _matches(semantic, _DATA_DISPLAY_SEMANTICS)


def _is_form(node: UINode) -> bool:
    action = node.attributes.get("actionId", "").lower()
    return _matches(node.semantic_tag.lower(), _FORM_SEMANTICS) or _matches(action, _FORM_ACTIONS)


def _is_interactive(node: UINode) -> bool:
    return node.type.lower() in _INTERACTIVE_TYPES or _matches(node.semantic_tag.lower(), _INTERACTIVE_SEMANTICS)


def infer_model_name(node: UINode) -> str | None:
    """Guess the domain entity behind a node from its semantic tag, e.g. 'task-list' -> 'Task'."""
    source = node.semantic_tag or node.id
    words = re.sub(r"([a-z])([A-Z])", r"\1-\2", source).lower()
    entity = [w for w in re.split(r"[-_\s]+", words) if len(w) > 1 and w not in _UI_WORDS]
    if not entity:
        return None
    return entity[0].capitalize()


def _infer_fields(node: UINode) -> list[str]:
    fields = ["id", "createdAt", "updatedAt"]
    for child in node.children:
        name = child.attributes.get("name")
        if name and name not in fields:
            fields.append(name)
        labels = [child.attributes.get("placeholder", "")]
        if child.type == "text":
            labels.append(child.attributes.get("text", ""))
        for raw in labels:
            label = re.sub(r"\s+", "_", raw.strip().lower())
            if 1 < len(label) < 30 and label not in fields:
                fields.append(label)
    return fields


def _add_endpoint(endpoints: list[InferredEndpoint], method: str, path: str, purpose: str, node: UINode) -> None:
    if not any(e.method == method and e.path == path for e in endpoints):
        endpoints.append(InferredEndpoint(method=method, path=path, purpose=purpose, triggered_by=node.id))


def analyze_layout(manifest: LayoutManifest) -> FrontendBackendNeeds:
    """Walk the layout tree (and reusable definitions) and collect backend requirements."""
    nodes = _flatten(manifest.root)
    for definition in manifest.definitions.values():
        nodes.extend(_flatten(definition))

    needs = FrontendBackendNeeds()
    seen_models: set[str] = set()
    interactive_count = 0

    for node in nodes:
        combined = " ".join(
            (
                node.semantic_tag.lower(),
                node.type.lower(),
                node.attributes.get("text", "").lower(),
                node.attributes.get("actionId", "").lower(),
            )
        )

        if _matches(combined, AUTH_KEYWORDS):
            needs.auth_required = True
            if "User" not in seen_models:
                seen_models.add("User")
                needs.data_models.append(
                    InferredDataModel(
                        name="User",
                        fields=["id", "email", "password", "name", "avatar", "createdAt"],
                        inferred_from=node.semantic_tag or node.id,
                    )
                )
                _add_endpoint(needs.api_endpoints, "POST", "/api/auth/login", "User authentication", node)
                _add_endpoint(needs.api_endpoints, "POST", "/api/auth/register", "User registration", node)
                _add_endpoint(needs.api_endpoints, "POST", "/api/auth/logout", "User logout", node)

        if _is_data_display(node):
            model = infer_model_name(node)
            if model and model not in seen_models:
                seen_models.add(model)
                needs.data_models.append(
                    InferredDataModel(name=model, fields=_infer_fields(node), inferred_from=node.semantic_tag or node.id)
                )
                _add_endpoint(needs.api_endpoints, "GET", f"/api/{model.lower()}s", f"Fetch {model} data", node)

        if _is_form(node):
            model = infer_model_name(node)
            if model:
                base = f"/api/{model.lower()}s"
                _add_endpoint(needs.api_endpoints, "POST", base, f"Create {model}", node)
                _add_endpoint(needs.api_endpoints, "PUT", f"{base}/:id", f"Update {model}", node)
                _add_endpoint(needs.api_endpoints, "DELETE", f"{base}/:id", f"Delete {model}", node)

        if _matches(combined, UPLOAD_KEYWORDS):
            needs.file_uploads = True
            _add_endpoint(needs.api_endpoints, "POST", "/api/upload", "Handle file uploads", node)

        if _matches(combined, SEARCH_KEYWORDS):
            needs.search_needed = True
            _add_endpoint(needs.api_endpoints, "GET", "/api/search", "Search functionality", node)

        if _matches(combined, REALTIME_KEYWORDS):
            needs.realtime_needed = True

        if _matches(combined, PAGINATION_KEYWORDS):
            needs.pagination_needed = True

        if _is_interactive(node):
            interactive_count += 1
            state_name = node.attributes.get("name") or node.semantic_tag or node.id
            if state_name and state_name not in needs.local_state:
                needs.local_state.append(state_name)

    for feature in manifest.detected_features:
        fl = feature.lower()
        needs.auth_required = needs.auth_required or _matches(fl, AUTH_KEYWORDS)
        needs.realtime_needed = needs.realtime_needed or _matches(fl, REALTIME_KEYWORDS)
        needs.search_needed = needs.search_needed or _matches(fl, SEARCH_KEYWORDS)
        needs.file_uploads = needs.file_uploads or _matches(fl, UPLOAD_KEYWORDS)

    if needs.auth_required:
        needs.global_state += ["currentUser", "isAuthenticated"]
    if needs.search_needed:
        needs.global_state += ["searchQuery", "searchResults"]
    if needs.realtime_needed:
        needs.global_state += ["notifications", "liveData"]

    model_count = len(needs.data_models)
    needs.caching_needed = model_count >= 3 or needs.pagination_needed

    if interactive_count > 15 or model_count > 5:
        needs.state_complexity = "complex"
    elif interactive_count > 7 or model_count > 2:
        needs.state_complexity = "moderate"

    large_display = any(_matches(n.semantic_tag.lower(), ("table", "chart", "dashboard")) for n in nodes)
    if large_display or model_count > 3:
        needs.expected_data_volume = "high"
    elif model_count > 1:
        needs.expected_data_volume = "medium"
    if large_display:
        needs.query_complexity = "complex"
    elif model_count > 2:
        needs.query_complexity = "moderate"
    needs.concurrent_users = 5000 if needs.realtime_needed else 1000

    logger.debug(
        "Layout analysis: %d nodes, %d models, %d endpoints",
        len(nodes), model_count, len(needs.api_endpoints),
    )
    return needs
