"""
Figma Commands - Typed wrappers around plugin commands

One coroutine per remote command. Every wrapper takes the session explicitly,
builds the plugin-facing params (the plugin expects camelCase keys), logs the
call and normalizes unexpected failures into CommandExecutionError so callers
only ever see the command error hierarchy.
"""

import logging
from typing import Any, Dict, List, Optional

from figma_communicator import (
    ChannelConnectionError,
    CommandExecutionError,
    FigmaChannelSession,
    FigmaCommandError,
)

logger = logging.getLogger(__name__)


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

async def _call(session: FigmaChannelSession, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
    try:
        return await session.send_command(command, params or {})
    except (FigmaCommandError, ChannelConnectionError):
        raise
    except Exception as e:
        logger.error(f"❌ Communication/system error in {command}: {str(e)}")
        raise CommandExecutionError(
            {"code": "communication_error", "message": f"Failed to call {command}: {str(e)}", "details": {"command": command}},
            command=command,
            params=params,
        ) from e


def extract_node_id(result: Any) -> Optional[str]:
    """Pick the created/affected node id out of a plugin response, whatever key it uses."""
    if not isinstance(result, dict):
        return None
    for key in ("id", "nodeId", "newCardId", "created_node_id", "instanceId"):
        value = result.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def is_soft_failure(result: Any) -> bool:
    """True when the plugin answered but flagged the operation as failed."""
    return isinstance(result, dict) and result.get("success") is False


# ============================================
# ============== DOCUMENT READS ==============
# ============================================

async def get_document_info(session: FigmaChannelSession) -> Dict[str, Any]:
    """Return the current page summary: { id, name, type, children: [...] }."""
    logger.info("📄 Calling get_document_info")
    return await _call(session, "get_document_info")


async def get_selection(session: FigmaChannelSession) -> List[Dict[str, Any]]:
    """
    Return the nodes the user currently has selected.

    The plugin answers either a bare list or { selection: [...] }; both are
    flattened to a list of node summaries.
    """
    logger.info("🖱️ Calling get_selection")
    result = await _call(session, "get_selection")
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        return list(result.get("selection") or [])
    return []


async def get_node_info(session: FigmaChannelSession, node_id: str) -> Dict[str, Any]:
    """
    Fetch one node and its nested children.

    Args:
        node_id: The node to inspect (e.g., "194:51")

    Returns:
        A node document: { id, name, type, visible, children?, absoluteBoundingBox? }.
        Never cache it; the remote tree mutates between calls.
    """
    logger.debug(f"🔍 Calling get_node_info {node_id}")
    return await _call(session, "get_node_info", {"nodeId": node_id})


async def get_local_components(session: FigmaChannelSession) -> List[Dict[str, Any]]:
    logger.info("🧩 Calling get_local_components")
    result = await _call(session, "get_local_components")
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        return list(result.get("components") or [])
    return []


# ============================================
# ============ CARD CREATION =================
# ============================================

async def create_component_instance(
    session: FigmaChannelSession,
    component_id: Optional[str] = None,
    component_key: Optional[str] = None,
    parent_id: Optional[str] = None,
    x: float = 0.0,
    y: float = 0.0,
) -> Any:
    """
    Create an instance of a local (id) or published (key) component.

    Returns:
        The plugin response; success carries the new node id under ``id``.

    Raises:
        CommandExecutionError: `missing_parameter` when neither id nor key is given,
            or any plugin-side failure such as `component_not_found`.
    """
    if not component_id and not component_key:
        raise CommandExecutionError({
            "code": "missing_parameter",
            "message": "Provide at least one of 'component_id' or 'component_key'",
            "details": {},
        }, command="create_component_instance")

    params: Dict[str, Any] = {"x": float(x), "y": float(y)}
    if component_id:
        params["componentId"] = component_id
    if component_key:
        params["componentKey"] = component_key
    if parent_id:
        params["parentId"] = parent_id
    logger.info(f"🧩 create_component_instance: id={component_id} key={component_key} parent_id={parent_id}")
    return await _call(session, "create_component_instance", params)


async def append_card_to_container(
    session: FigmaChannelSession,
    container_id: str,
    template_id: str,
    new_name: Optional[str] = None,
    insert_index: Optional[int] = None,
) -> Any:
    """Clone ``template_id`` and append the copy into ``container_id`` (at ``insert_index`` when given)."""
    params: Dict[str, Any] = {"containerId": container_id, "templateId": template_id}
    if new_name:
        params["newName"] = new_name
    if insert_index is not None:
        params["insertIndex"] = int(insert_index)
    logger.info(f"🌱 append_card_to_container: template={template_id} container={container_id} index={insert_index}")
    return await _call(session, "append_card_to_container", params)


async def delete_multiple_nodes(session: FigmaChannelSession, node_ids: List[str]) -> Any:
    logger.info(f"🗑️ delete_multiple_nodes: node_count={len(node_ids)}")
    return await _call(session, "delete_multiple_nodes", {"nodeIds": list(node_ids)})


# ============================================
# ======== PROPERTIES & VISIBILITY ===========
# ============================================

async def get_component_property_references(session: FigmaChannelSession, node_id: str) -> Any:
    """
    Read the component property references of an instance.

    Returns:
        Typically { properties: { "showTitle#194:57": {...}, ... }, propertyKeys?: [...] }.
    """
    logger.info(f"📋 get_component_property_references: {node_id}")
    return await _call(session, "get_component_property_references", {"nodeId": node_id})


async def set_instance_properties(session: FigmaChannelSession, node_id: str, properties: Dict[str, Any]) -> Any:
    logger.info(f"🎛️ set_instance_properties: {node_id} ({len(properties)} properties)")
    return await _call(session, "set_instance_properties", {"nodeId": node_id, "properties": properties})


async def hide_nodes_by_name(session: FigmaChannelSession, root_id: str, names: List[str]) -> Any:
    logger.info(f"🪄 hide_nodes_by_name: {', '.join(names)}")
    return await _call(session, "hide_nodes_by_name", {"rootId": root_id, "names": list(names)})


async def set_node_visible(session: FigmaChannelSession, node_id: str, visible: bool) -> Any:
    return await _call(session, "set_node_visible", {"nodeId": node_id, "visible": bool(visible)})


async def flush_layout(session: FigmaChannelSession) -> Any:
    """Ask the plugin to settle auto-layout so subsequent reads see real sizes."""
    return await _call(session, "flush_layout")


# ============================================
# =============== CONTENT ====================
# ============================================

async def set_text_content(session: FigmaChannelSession, node_id: str, text: str) -> Any:
    logger.info(f"📝 set_text_content: {node_id} ({len(text)} chars)")
    return await _call(session, "set_text_content", {"nodeId": node_id, "text": text})


async def set_text_auto_resize(session: FigmaChannelSession, node_id: str, auto_resize: str = "HEIGHT") -> Any:
    return await _call(session, "set_text_auto_resize", {"nodeId": node_id, "autoResize": auto_resize})


async def set_image_fill(
    session: FigmaChannelSession,
    node_id: str,
    image_url: Optional[str] = None,
    image_base64: Optional[str] = None,
    scale_mode: str = "FIT",
    opacity: float = 1.0,
) -> Any:
    """
    Fill a node with an image, either fetched by the plugin from a URL or sent inline.

    Exactly one of ``image_url`` / ``image_base64`` must be given. Inline data
    is a data URL (``data:image/png;base64,...``) and is far more expensive to
    transfer than a URL.
    """
    if bool(image_url) == bool(image_base64):
        raise CommandExecutionError({
            "code": "invalid_parameter",
            "message": "Provide exactly one of 'image_url' or 'image_base64'",
            "details": {"node_id": node_id},
        }, command="set_image_fill")

    params: Dict[str, Any] = {"nodeId": node_id, "scaleMode": scale_mode, "opacity": float(opacity)}
    if image_url:
        params["imageUrl"] = image_url
        logger.info(f"🖼️ set_image_fill (url): {node_id} <- {image_url}")
    else:
        params["imageBase64"] = image_base64
        logger.info(f"🖼️ set_image_fill (inline): {node_id} ({len(image_base64)} chars)")
    return await _call(session, "set_image_fill", params)


# ============================================
# =========== RESIZE & EXPORT ================
# ============================================

async def resize_poster_to_fit(
    session: FigmaChannelSession,
    poster_id: str,
    anchor_id: Optional[str] = None,
    bottom_padding: float = 150,
) -> Any:
    """Grow or shrink ``poster_id`` to its content bottom (or ``anchor_id``'s) plus padding."""
    params: Dict[str, Any] = {"posterId": poster_id, "bottomPadding": bottom_padding}
    if anchor_id:
        params["anchorId"] = anchor_id
    logger.info(f"📐 resize_poster_to_fit: poster={poster_id} anchor={anchor_id} padding={bottom_padding}")
    return await _call(session, "resize_poster_to_fit", params)


async def export_frame(
    session: FigmaChannelSession,
    node_id: str,
    export_format: str = "PNG",
    scale: float = 2,
) -> Any:
    """
    Export a frame.

    Returns:
        Either { filePath: "<server-relative path>" } when the plugin side wrote
        the file itself, or { base64: "<data>" } to be written locally.
    """
    params: Dict[str, Any] = {"nodeId": node_id, "format": export_format, "scale": scale}
    logger.info(f"💾 export_frame: {node_id} format={export_format} scale={scale}")
    return await _call(session, "export_frame", params)
