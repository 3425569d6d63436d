"""Node status updates sent to the API server as three-way strategic merge patches.

Nodes are plain dicts in the API server's JSON shape. The node client
provides ``get(name)`` and ``patch(name, patch, subresource)``, each
returning the stored node (or an awaitable of it) and raising
``NotFoundError`` or ``ConflictError`` from ``kubenode.errors``.

The patch is computed from what this node last applied (kept in two
annotations on the node), what the provider wants now, and what the API
server holds. Values that other agents added, such as extra conditions,
annotations or labels, therefore survive an update.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from kubenode.errors import is_conflict

logger = logging.getLogger(__name__)

LAST_APPLIED_NODE_STATUS_ANNOTATION = "virtual-kubelet.io/last-applied-node-status"
LAST_APPLIED_OBJECT_META_ANNOTATION = "virtual-kubelet.io/last-applied-object-meta"

_SPECIAL_ANNOTATIONS = frozenset({LAST_APPLIED_NODE_STATUS_ANNOTATION, LAST_APPLIED_OBJECT_META_ANNOTATION})

# Lists merged element by element, keyed on the given field; other lists are atomic.
_MERGE_KEYS: dict[tuple[str, ...], str] = {
    ("metadata", "ownerReferences"): "uid",
    ("status", "conditions"): "type",
    ("status", "addresses"): "type",
}

_RETRY_STEPS = 5
_RETRY_DELAY = 0.01
_RETRY_JITTER = 0.1

Node = dict[str, Any]
Patch = dict[str, Any]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def simplest_object_metadata(base_meta: dict[str, Any], meta_with_labels: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Return name, namespace and UID of ``base_meta`` with labels and annotations of the second.

    The annotations in which the last applied state is recorded are left out.
    """
    ret: dict[str, Any] = {}
    for key in ("namespace", "name", "uid"):
        value = base_meta.get(key)
        if value:
            ret[key] = value
    annotations: dict[str, str] = {}
    ret["annotations"] = annotations
    if meta_with_labels is not None:
        ret["labels"] = dict(meta_with_labels.get("labels") or {})
        for key, value in (meta_with_labels.get("annotations") or {}).items():
            if key not in _SPECIAL_ANNOTATIONS:
                annotations[key] = value
    return ret


def _merge_key(path: tuple[str, ...], item: Any) -> Any:
    key = _MERGE_KEYS[path]
    if not isinstance(item, dict) or key not in item:
        raise ValueError(f"list element {item!r} at {'.'.join(path)} does not contain declared merge key {key!r}")
    return item[key]


def _find(items: list[Any], key: str, value: Any) -> Optional[int]:
    return next((i for i, item in enumerate(items) if isinstance(item, dict) and item.get(key) == value), None)


def _diff_list(
    original: list[Any],
    modified: list[Any],
    path: tuple[str, ...],
    ignore_deletions: bool,
    ignore_changes: bool,
) -> list[Any]:
    key = _MERGE_KEYS[path]
    original_keys = [_merge_key(path, item) for item in original]
    modified_keys = [_merge_key(path, item) for item in modified]
    result: list[Any] = []
    for item, value in zip(modified, modified_keys):
        if value in original_keys:
            sub = _diff_maps(original[original_keys.index(value)], item, path, ignore_deletions, ignore_changes)
            if sub:
                result.append({key: value, **sub})
        elif not ignore_changes:
            result.append(copy.deepcopy(item))
    if not ignore_deletions:
        result.extend({key: value, "$patch": "delete"} for value in original_keys if value not in modified_keys)
    return result


def _diff_maps(
    original: dict[str, Any],
    modified: dict[str, Any],
    path: tuple[str, ...],
    ignore_deletions: bool,
    ignore_changes: bool,
) -> Patch:
    patch: Patch = {}
    for key, mod in modified.items():
        child = path + (key,)
        if key not in original:
            if not ignore_changes:
                patch[key] = copy.deepcopy(mod)
            continue
        orig = original[key]
        if isinstance(orig, dict) and isinstance(mod, dict):
            sub = _diff_maps(orig, mod, child, ignore_deletions, ignore_changes)
            if sub:
                patch[key] = sub
        elif isinstance(orig, list) and isinstance(mod, list) and child in _MERGE_KEYS:
            items = _diff_list(orig, mod, child, ignore_deletions, ignore_changes)
            if items:
                patch[key] = items
        elif orig != mod and not ignore_changes:
            patch[key] = copy.deepcopy(mod)
    if not ignore_deletions:
        for key in original:
            if key not in modified:
                patch[key] = None
    return patch


def _merge_list(current: list[Any], patch_items: list[Any], path: tuple[str, ...]) -> list[Any]:
    key = _MERGE_KEYS[path]
    items = copy.deepcopy(current)
    for patch_item in patch_items:
        if not isinstance(patch_item, dict) or key not in patch_item:
            items.append(copy.deepcopy(patch_item))
            continue
        value = patch_item[key]
        index = _find(items, key, value)
        if patch_item.get("$patch") == "delete":
            items = [i for i in items if not (isinstance(i, dict) and i.get(key) == value)]
        elif index is not None:
            items[index] = _apply(items[index], patch_item, path)
        else:
            items.append(_apply({}, patch_item, path))
    return items


def _apply(document: dict[str, Any], patch: Patch, path: tuple[str, ...]) -> dict[str, Any]:
    directive = patch.get("$patch")
    if directive == "replace":
        return {k: copy.deepcopy(v) for k, v in patch.items() if k != "$patch"}
    if directive == "delete":
        return {}
    result = copy.deepcopy(document)
    for key, value in patch.items():
        if key.startswith("$"):
            continue
        if value is None:
            result.pop(key, None)
            continue
        child = path + (key,)
        current = result.get(key)
        if isinstance(value, dict):
            result[key] = _apply(current if isinstance(current, dict) else {}, value, child)
        elif isinstance(value, list) and child in _MERGE_KEYS:
            result[key] = _merge_list(current if isinstance(current, list) else [], value, child)
        else:
            result[key] = copy.deepcopy(value)
    return result


def apply_strategic_merge_patch(document: dict[str, Any], patch: Patch) -> dict[str, Any]:
    """Return a copy of ``document`` with a node strategic merge patch applied.

    A null value removes a key; lists with a merge key are merged element by
    element, honouring ``"$patch": "delete"``; other values are replaced.
    """
    return _apply(document, patch, ())


def create_three_way_merge_patch(original: dict[str, Any], modified: dict[str, Any], current: dict[str, Any]) -> Patch:
    """Build a patch taking ``current`` to ``modified``.

    Deletions are those from ``original`` (what was last applied) to
    ``modified``, so values present only in ``current`` are left alone.
    """
    delta = _diff_maps(current, modified, (), ignore_deletions=True, ignore_changes=False)
    deletions = _diff_maps(original, modified, (), ignore_deletions=False, ignore_changes=True)
    return apply_strategic_merge_patch(deletions, delta)


def _load_last_applied(raw: str, annotation: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Cannot unmarshal old node (key: {annotation!r}): {raw!r}: {exc}") from exc
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Cannot unmarshal old node (key: {annotation!r}): {raw!r}: not an object")
    return value


def _dumps(value: Any, what: str) -> str:
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Cannot marshal {what}: {exc}") from exc


def prepare_three_way_patch(node_from_provider: Node, api_server_node: Node) -> Patch:
    """Compute the patch that applies the provider's node metadata and status.

    The result also records what was applied in the node's annotations, for
    use as the original state of the next patch.
    """
    server_meta = api_server_node.get("metadata") or {}
    annotations = server_meta.get("annotations") or {}
    old_status = annotations.get(LAST_APPLIED_NODE_STATUS_ANNOTATION)
    old_meta = annotations.get(LAST_APPLIED_OBJECT_META_ANNOTATION)

    # Without both annotations the node was written by someone else, or before
    # this was recorded; either way nothing counts as previously applied.
    old_node: Node = {}
    if old_status is not None and old_meta is not None:
        old_node = {
            "metadata": _load_last_applied(old_meta, LAST_APPLIED_OBJECT_META_ANNOTATION),
            "status": _load_last_applied(old_status, LAST_APPLIED_NODE_STATUS_ANNOTATION),
        }

    new_meta = simplest_object_metadata(server_meta, node_from_provider.get("metadata") or {})
    new_status = copy.deepcopy(node_from_provider.get("status") or {})
    # The metadata must be recorded before the status annotation is added to it.
    new_meta["annotations"][LAST_APPLIED_OBJECT_META_ANNOTATION] = _dumps(new_meta, "object meta from provider")
    new_meta["annotations"][LAST_APPLIED_NODE_STATUS_ANNOTATION] = _dumps(new_status, "node status from provider")
    new_node: Node = {"metadata": new_meta, "status": new_status}

    return create_three_way_merge_patch(old_node, new_node, api_server_node)


def _log_fields(node: Node) -> dict[str, Any]:
    meta = node.get("metadata") or {}
    return {
        "node.UID": meta.get("uid", ""),
        "node.name": meta.get("name", ""),
        "node.cluster": meta.get("clusterName", ""),
        "node.taints": taints_string((node.get("spec") or {}).get("taints") or []),
    }


async def update_node_status(nodes: Any, node_from_provider: Node) -> Node:
    """Patch the node's status in the API server and return the stored node.

    Conflicts are retried a few times with a fresh copy of the node; other
    errors, and the last conflict, are raised.
    """
    name = (node_from_provider.get("metadata") or {}).get("name", "")
    for attempt in range(1, _RETRY_STEPS + 1):
        try:
            api_server_node = await _resolve(nodes.get(name))
            logger.debug("got node from api server: %s", _log_fields(api_server_node))
            try:
                patch = prepare_three_way_patch(node_from_provider, api_server_node)
            except ValueError as exc:
                raise ValueError(f"Cannot generate patch: {exc}") from exc
            logger.debug("Generated three way patch: %s", patch)
            try:
                updated = await _resolve(nodes.patch(name, patch, "status"))
            except Exception as exc:
                logger.warning("Failed to patch node status (patch=%s): %s", patch, exc)
                raise
        except Exception as exc:
            if attempt == _RETRY_STEPS or not is_conflict(exc):
                raise
            await asyncio.sleep(_RETRY_DELAY * (1 + random.random() * _RETRY_JITTER))
            continue
        logger.debug(
            "updated node status in api server (resourceVersion=%s, conditions=%s)",
            (updated.get("metadata") or {}).get("resourceVersion"),
            (updated.get("status") or {}).get("conditions"),
        )
        return updated
    raise AssertionError("unreachable")


def update_node_status_heartbeat(node: Node) -> None:
    """Set the heartbeat time of every condition of the node to now."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    for condition in (node.get("status") or {}).get("conditions") or []:
        condition["lastHeartbeatTime"] = now


def taints_string(taints: Iterable[dict[str, Any]]) -> str:
    """Render taints as ``key=value:effect`` separated by commas."""
    return ", ".join(f"{t.get('key', '')}={t.get('value', '')}:{t.get('effect', '')}" for t in taints)