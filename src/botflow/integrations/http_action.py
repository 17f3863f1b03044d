"""
HTTP 动作：请求构造、默认传输与响应解析
"""
from typing import Dict, Any, Optional, List, Tuple
from urllib.parse import urlencode
import json
import logging

import httpx

from ..core.expressions import render, render_structure
from ..core.paths import extract_by_path


logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30

PATH_EXTRACTORS = ("jsonpath", "jmespath")

PARSE_MODES = {
    "html": "HTML",
    "markdown": "Markdown",
    "md": "Markdown",
    "markdownv2": "MarkdownV2",
    "mdv2": "MarkdownV2",
}


class HttpActionError(Exception):
    """HTTP 动作在请求或解析阶段失败"""
    pass


class HttpxTransport:
    """基于 httpx.AsyncClient 的默认 HTTP 传输"""

    def __init__(self, timeout: float = DEFAULT_HTTP_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, request: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        timeout = request.get("timeout") or self.timeout
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.request(
                request["method"],
                request["url"],
                headers=request.get("headers") or None,
                content=request.get("content"),
                files=request.get("files"),
            )
        logger.debug(f"HTTP {request['method']} {request['url']} -> {response.status_code}")
        return {"status_code": response.status_code, "text": response.text}


def build_headers(raw: Any, context: Dict[str, Any]) -> Dict[str, str]:
    """渲染请求头，支持映射或 ``[{key, value}]`` 列表"""
    headers: Dict[str, str] = {}
    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            key = str(entry.get("key") or entry.get("name") or "")
            if key:
                value = entry.get("value")
                headers[key] = render("" if value is None else str(value), context)
    elif isinstance(raw, dict):
        rendered = render_structure(raw, context) or {}
        for key, value in rendered.items():
            if key:
                headers[key] = "" if value is None else str(value)
    return headers


def _form_pairs(rendered: Any) -> List[Tuple[str, str]]:
    if not isinstance(rendered, dict):
        return []
    return [(key, "" if value is None else str(value)) for key, value in rendered.items()]


def build_request_body(raw: Any, context: Dict[str, Any]) -> Dict[str, Any]:
    """渲染请求体

    返回 ``content``/``files`` 以及可选的 ``content_type``。
    对象形式按 ``mode`` 选择 json、form (urlencoded)、multipart 或 raw 文本。
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        return {"content": render(raw, context)}
    if not isinstance(raw, dict):
        return {"content": str(raw)}

    mode = str(raw.get("mode") or "raw").lower()
    if mode == "json":
        rendered = render_structure(raw.get("json") or {}, context)
        return {"content": json.dumps(rendered, ensure_ascii=False), "content_type": "application/json"}
    if mode in ("form", "urlencoded"):
        pairs = _form_pairs(render_structure(raw.get("form") or {}, context))
        return {"content": urlencode(pairs), "content_type": "application/x-www-form-urlencoded"}
    if mode == "multipart":
        pairs = _form_pairs(render_structure(raw.get("form") or {}, context))
        return {"files": {key: (None, value) for key, value in pairs}}

    template = str(raw.get("text") or raw.get("raw") or "")
    if template:
        return {"content": render(template, context)}
    return {}


def build_request(request_cfg: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """按配置渲染完整请求"""
    url_template = str(request_cfg.get("url") or "")
    if not url_template:
        raise HttpActionError("HTTP action missing url")
    try:
        url = render(url_template, context)
    except Exception as e:
        raise HttpActionError(f"render url failed: {e}")

    headers = build_headers(request_cfg.get("headers"), context)
    body = build_request_body(request_cfg.get("body"), context)
    content_type = body.pop("content_type", None)
    if content_type and "Content-Type" not in headers:
        headers["Content-Type"] = content_type

    request = {
        "method": str(request_cfg.get("method") or "GET").upper(),
        "url": url,
        "headers": headers,
        **body,
    }
    if request_cfg.get("timeout"):
        request["timeout"] = float(request_cfg["timeout"])
    return request


def response_view(raw: Any) -> Dict[str, Any]:
    """把传输层返回值整理为 ``{status_code, text, json}``"""
    if isinstance(raw, httpx.Response):
        raw = {"status_code": raw.status_code, "text": raw.text}
    raw = raw if isinstance(raw, dict) else {}
    text = raw.get("text")
    payload = raw.get("json")
    if payload is None and isinstance(text, str) and text:
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
    if text is None:
        text = "" if payload is None else json.dumps(payload, ensure_ascii=False)
    return {
        "status_code": raw.get("status_code", raw.get("status")),
        "text": text,
        "json": payload,
    }


def apply_extractor(parse_cfg: Dict[str, Any], config: Dict[str, Any], response: Dict[str, Any], context: Dict[str, Any]) -> Any:
    """执行顶层提取器，结果在模板中以 ``extracted`` 引用"""
    extractor = parse_cfg.get("extractor") or config.get("extractor") or {}
    kind = str(extractor.get("type") or "none").lower()
    expression = str(extractor.get("expression") or "")
    if kind == "none" or not expression:
        return None
    if kind == "template":
        return render(expression, context)
    if kind in PATH_EXTRACTORS:
        if response["json"] is None:
            raise HttpActionError("response json unavailable for extractor")
        try:
            return extract_by_path(expression, response["json"])
        except ValueError as e:
            raise HttpActionError(f"extractor failed: {e}")
    raise HttpActionError(f"unknown extractor type: {kind}")


def map_variables(
    entries: Any,
    variables: Dict[str, Any],
    runtime_variables: Dict[str, Any],
    response: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """按 ``parse.variables`` 把响应写入变量"""
    if not isinstance(entries, list):
        return variables
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "")
        if not name:
            continue
        kind = str(entry.get("type") or "template").lower()
        if kind == "template":
            variables[name] = render(str(entry.get("template") or ""), context)
        elif kind == "static":
            variables[name] = entry.get("value")
        elif kind == "runtime":
            variables[name] = runtime_variables.get(str(entry.get("key") or ""))
        elif kind in PATH_EXTRACTORS:
            if response["json"] is None:
                raise HttpActionError("response json unavailable for variable extractor")
            expression = str(entry.get("expression") or "")
            try:
                variables[name] = extract_by_path(expression, response["json"]) if expression else None
            except ValueError as e:
                raise HttpActionError(f"variable extractor failed: {e}")
    return variables


def normalize_parse_mode(alias: str) -> Optional[str]:
    return PARSE_MODES.get(str(alias or "").lower())


def render_result(config: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """按 ``render`` 配置生成消息文本与按钮标题"""
    render_cfg = config.get("render") or {}
    message_cfg = render_cfg.get("message") or {}
    template = str(message_cfg.get("template") or render_cfg.get("template") or "")
    format_alias = message_cfg.get("format") or render_cfg.get("format") or "html"
    if "update_message" in message_cfg:
        update_message = bool(message_cfg["update_message"])
    else:
        update_message = bool(render_cfg.get("update_message", True))

    text = render(template, context) if template else ""
    result: Dict[str, Any] = {
        "new_text": text,
        "parse_mode": normalize_parse_mode(format_alias),
        "next_menu_id": message_cfg.get("next_menu_id") or render_cfg.get("next_menu_id") or None,
        "should_edit_message": bool(update_message and text),
    }
    title_template = render_cfg.get("button_title_template")
    if title_template:
        result["button_title"] = render(str(title_template), context) or None
    return result
