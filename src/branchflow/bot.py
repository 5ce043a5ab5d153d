#!/usr/bin/env python3
"""
Branchflow web server - HTTP interface for branching conversations

Serves conversations from the JSONL store and streams responder replies
to the browser as server-sent events.  The message routes act on the
active conversation; /api/conversations lists, creates and switches them.
Planning canvases are stored alongside and hosted on an in-process
collaboration hub.

Usage:
    branchflow-web [--port 8766] [--host 0.0.0.0] [--data-dir ~/.branchflow]
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from aiohttp import web
from pydantic import ValidationError

from .canvas_graph import parse_graph_payload
from .canvas_session import CanvasSession
from .responder import SSEResponder
from .session import ConversationRegistry, ConversationSession, NotEditableError, NotReplyableError
from .store import DATA_DIR, ForestStore, JsonlForestStore, StoreError
from .transport import LocalHub

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", ConversationRegistry)
CANVAS_HUB_KEY = web.AppKey("canvas_hub", LocalHub)
CANVASES_KEY = web.AppKey("canvases", dict)
SEND_LOCK_KEY = web.AppKey("send_lock", asyncio.Lock)

KEEP_ALIVE_SECONDS = 5

# Participant id the server uses on canvas channels
SERVER_PARTICIPANT = "branchflow-server"

SSE_HEADERS = {
    'Content-Type': 'text/event-stream',
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'Access-Control-Allow-Origin': '*',
    'X-Accel-Buffering': 'no',
}


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _session(request: web.Request) -> ConversationSession:
    return request.app[REGISTRY_KEY].active


def _store(request: web.Request) -> ForestStore:
    store = request.app[REGISTRY_KEY].store
    if store is None:
        raise web.HTTPServiceUnavailable(
            text=json.dumps({"error": "No store configured"}), content_type="application/json",
        )
    return store


async def _read_json(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text=json.dumps({"error": "Invalid JSON body"}), content_type="application/json")
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text=json.dumps({"error": "Expected a JSON object"}), content_type="application/json")
    return data


async def handle_status(request):
    """Health check endpoint."""
    session = _session(request)
    return web.json_response({
        "status": "ok",
        "service": "branchflow",
        "conversation": session.conversation_id,
        "messages": len(session.forest),
        "timestamp": datetime.now().isoformat()
    })


async def handle_forest(request):
    """Positioned nodes and edges for rendering."""
    return web.json_response(_session(request).view().to_dict())


async def handle_message_stream(request):
    """Send a message and stream the reply."""
    session = _session(request)
    data = await _read_json(request)

    content = str(data.get("content", "")).strip()
    if not content:
        return _error("No content provided", 400)
    references = data.get("references")
    if references is not None and not isinstance(references, list):
        return _error("references must be a list of message ids", 400)
    if "reply_to" in data:
        try:
            session.reply_to(data["reply_to"])
        except KeyError:
            return _error(f"Message not found: {data['reply_to']}", 404)
        except NotReplyableError as e:
            return _error(str(e), 400)

    response = web.StreamResponse(status=200, reason='OK', headers=SSE_HEADERS)
    await response.prepare(request)

    loop = asyncio.get_running_loop()
    last_event_time = [loop.time()]

    async def send_sse_data(data_dict):
        await response.write(f'data: {json.dumps(data_dict)}\n\n'.encode())
        last_event_time[0] = loop.time()

    async def keep_alive_task():
        """Send periodic keep-alive comments while the responder is quiet."""
        while True:
            await asyncio.sleep(KEEP_ALIVE_SECONDS)
            if loop.time() - last_event_time[0] >= KEEP_ALIVE_SECONDS - 1:
                await response.write(b': keepalive\n\n')
                last_event_time[0] = loop.time()

    async def on_delta(text):
        await send_sse_data({"type": "delta", "text": text})

    ping_task = asyncio.create_task(keep_alive_task())
    try:
        async with request.app[SEND_LOCK_KEY]:
            result = await session.send(
                content,
                references=references,
                provider=data.get("provider"),
                model=data.get("model"),
                on_delta=on_delta,
            )
        await send_sse_data({
            "type": "done",
            "user_node": result.user_node.model_dump(),
            "assistant_node": result.assistant_node.model_dump(),
            "references": result.references,
            "warnings": [w.message for w in result.warnings],
            "error": result.error,
        })
    except (ConnectionResetError, BrokenPipeError) as e:
        logger.debug(f"Client disconnected: {e}")
    finally:
        ping_task.cancel()
        try:
            await ping_task
        except (asyncio.CancelledError, ConnectionResetError):
            pass

    return response


async def handle_delete(request):
    session = _session(request)
    node_id = request.match_info['id']
    removed = session.delete(node_id)
    if not removed:
        return _error(f"Message not found: {node_id}", 404)
    return web.json_response({"deleted": sorted(removed)})


async def handle_collapse(request):
    session = _session(request)
    node_id = request.match_info['id']
    try:
        collapsed = session.toggle_collapse(node_id)
    except KeyError:
        return _error(f"Message not found: {node_id}", 404)
    return web.json_response({"id": node_id, "is_collapsed": collapsed})


async def handle_edit(request):
    """Remove a user leaf and aim the next reply at its parent."""
    session = _session(request)
    node_id = request.match_info['id']
    try:
        content = session.edit(node_id)
    except KeyError:
        return _error(f"Message not found: {node_id}", 404)
    except NotEditableError as e:
        return _error(str(e), 409)
    return web.json_response({"content": content, "reply_target": session.reply_target})


async def handle_context(request):
    """The transcript a message is answered with."""
    session = _session(request)
    node_id = request.match_info['id']
    if node_id not in session.forest:
        return _error(f"Message not found: {node_id}", 404)
    selection = session.message_context(node_id)
    return web.json_response({
        "message_id": node_id,
        "context": [m.model_dump() for m in selection.messages()],
        "ancestry_length": selection.ancestry_length,
        "referenced_count": selection.referenced_count,
    })


async def handle_context_lens(request):
    """Adjust exclusions and preview the next reply's context."""
    session = _session(request)
    data = await _read_json(request)

    if data.get("include_all"):
        session.include_all()
    if data.get("exclude_all"):
        session.exclude_all()
    for node_id in data.get("exclude") or []:
        session.exclude(node_id)
    for node_id in data.get("include") or []:
        session.include(node_id)

    preview = session.context_preview(data.get("target_id"), data.get("references") or ())
    if preview is None:
        return web.json_response({"excluded": sorted(session.excluded_ids), "preview": None})
    return web.json_response({
        "excluded": sorted(session.excluded_ids),
        "preview": {
            "included": [n.id for n in preview.included],
            "excluded": [n.id for n in preview.excluded],
            "total_tokens": preview.total_tokens,
            "usage_percent": preview.usage_percent,
            "is_large": preview.is_large,
            "user_count": preview.user_count,
            "assistant_count": preview.assistant_count,
        },
    })


async def handle_node_positions(request):
    """Pin nodes where the user dropped them."""
    session = _session(request)
    data = await _read_json(request)
    moved = []
    for entry in data.get("positions") or []:
        try:
            session.move_node(str(entry["id"]), float(entry["x"]), float(entry["y"]))
        except KeyError:
            logger.debug(f"Ignoring position for unknown node: {entry}")
            continue
        except (TypeError, ValueError, ValidationError):
            return _error(f"Malformed position entry: {entry}", 400)
        moved.append(str(entry["id"]))
    return web.json_response({"saved": moved})


async def handle_relayout(request):
    session = _session(request)
    session.relayout()
    return web.json_response(session.view().to_dict())


# --- Conversations ---

def _conversation_or_404(request: web.Request) -> str:
    registry = request.app[REGISTRY_KEY]
    conversation_id = request.match_info['conversation_id']
    try:
        found = registry.exists(conversation_id)
    except StoreError as e:
        raise web.HTTPBadRequest(text=json.dumps({"error": str(e)}), content_type="application/json")
    if not found:
        raise web.HTTPNotFound(
            text=json.dumps({"error": "Conversation not found"}), content_type="application/json",
        )
    return conversation_id


async def handle_list_conversations(request):
    store = _store(request)
    return web.json_response({
        "conversations": [c.model_dump() for c in store.list_conversations()],
        "active": request.app[REGISTRY_KEY].active_id,
    })


async def handle_create_conversation(request):
    """Create a conversation and make it the active one."""
    store = _store(request)
    data = await _read_json(request)
    info = store.create_conversation(data.get("name") or None)
    request.app[REGISTRY_KEY].select(info.id)
    return web.json_response(info.model_dump(), status=201)


async def handle_get_conversation(request):
    conversation_id = _conversation_or_404(request)
    registry = request.app[REGISTRY_KEY]
    session = registry.open(conversation_id)
    info = registry.store.get_conversation(conversation_id) if registry.store is not None else None
    return web.json_response({
        "conversation": info.model_dump() if info is not None else {"id": conversation_id},
        "view": session.view().to_dict(),
    })


async def handle_rename_conversation(request):
    store = _store(request)
    conversation_id = _conversation_or_404(request)
    data = await _read_json(request)
    name = str(data.get("name") or "").strip()
    if not name:
        return _error("Name is required", 400)
    try:
        info = store.rename_conversation(conversation_id, name)
    except KeyError:
        return _error("Conversation not found", 404)
    return web.json_response(info.model_dump())


async def handle_delete_conversation(request):
    """Delete a conversation; deleting the active one opens a fresh conversation."""
    store = _store(request)
    conversation_id = _conversation_or_404(request)
    registry = request.app[REGISTRY_KEY]
    was_active = registry.active_id == conversation_id
    async with request.app[SEND_LOCK_KEY]:
        registry.close(conversation_id)
        store.delete_conversation(conversation_id)
        if was_active:
            registry.select(store.create_conversation().id)
    return web.json_response({"success": True, "active": registry.active_id})


async def handle_select_conversation(request):
    conversation_id = _conversation_or_404(request)
    async with request.app[SEND_LOCK_KEY]:
        session = request.app[REGISTRY_KEY].select(conversation_id)
    return web.json_response(session.view().to_dict())


# --- Canvases ---

async def _open_canvas(app: web.Application, canvas_id: str) -> CanvasSession:
    """The server's own participant on a canvas channel, opened on first use."""
    canvases = app[CANVASES_KEY]
    canvas = canvases.get(canvas_id)
    if canvas is None:
        canvas = CanvasSession(
            app[REGISTRY_KEY].store,
            canvas_id,
            SERVER_PARTICIPANT,
            transport=app[CANVAS_HUB_KEY].transport(SERVER_PARTICIPANT),
        )
        await canvas.open()
        canvases[canvas_id] = canvas
    return canvas


def _canvas_info_or_404(request: web.Request):
    store = _store(request)
    canvas_id = request.match_info['canvas_id']
    try:
        info = store.get_canvas_info(canvas_id)
    except StoreError as e:
        raise web.HTTPBadRequest(text=json.dumps({"error": str(e)}), content_type="application/json")
    if info is None:
        raise web.HTTPNotFound(text=json.dumps({"error": "Canvas not found"}), content_type="application/json")
    return info


async def handle_list_canvases(request):
    return web.json_response([c.model_dump() for c in _store(request).list_canvases()])


async def handle_create_canvas(request):
    store = _store(request)
    data = await _read_json(request)
    info = store.create_canvas(data.get("name") or None, str(data.get("description") or ""))
    return web.json_response(info.model_dump(), status=201)


async def handle_get_canvas(request):
    info = _canvas_info_or_404(request)
    canvas = await _open_canvas(request.app, info.id)
    return web.json_response({**info.model_dump(), **canvas.snapshot()})


async def handle_update_canvas(request):
    """Rename, describe or replace the contents of a canvas."""
    store = _store(request)
    info = _canvas_info_or_404(request)
    data = await _read_json(request)

    canvas = await _open_canvas(request.app, info.id)
    if "nodes" in data or "edges" in data:
        current = canvas.snapshot()
        try:
            blocks, edges = parse_graph_payload({
                "nodes": data["nodes"] if "nodes" in data else current["nodes"],
                "edges": data["edges"] if "edges" in data else current["edges"],
            })
        except (ValidationError, TypeError, AttributeError) as e:
            return _error(f"Malformed canvas contents: {e}", 400)
        canvas.replace(blocks, edges)
        canvas.saver.flush()

    if "name" in data or "description" in data:
        info = store.update_canvas_info(info.id, name=data.get("name"), description=data.get("description"))
    else:
        info = store.get_canvas_info(info.id)
    return web.json_response({**info.model_dump(), **canvas.snapshot()})


async def handle_delete_canvas(request):
    store = _store(request)
    info = _canvas_info_or_404(request)
    canvas = request.app[CANVASES_KEY].pop(info.id, None)
    if canvas is not None:
        await canvas.close()
    store.delete_canvas(info.id)
    return web.json_response({"success": True})


async def _flush_on_shutdown(app):
    for canvas in list(app[CANVASES_KEY].values()):
        await canvas.close()
    app[CANVASES_KEY].clear()
    app[REGISTRY_KEY].flush_all()


def create_app(
    session: ConversationSession,
    store: Optional[ForestStore] = None,
    canvas_hub: Optional[LocalHub] = None,
):
    """Create the aiohttp application."""
    app = web.Application()
    app[REGISTRY_KEY] = ConversationRegistry(
        store if store is not None else session.store,
        session.responder,
        active=session,
    )
    app[CANVAS_HUB_KEY] = canvas_hub if canvas_hub is not None else LocalHub()
    app[CANVASES_KEY] = {}
    app[SEND_LOCK_KEY] = asyncio.Lock()
    app.on_shutdown.append(_flush_on_shutdown)

    app.router.add_get('/api/status', handle_status)
    app.router.add_get('/api/forest', handle_forest)
    app.router.add_post('/api/messages', handle_message_stream)
    app.router.add_delete('/api/messages/{id}', handle_delete)
    app.router.add_post('/api/messages/{id}/collapse', handle_collapse)
    app.router.add_post('/api/messages/{id}/edit', handle_edit)
    app.router.add_get('/api/messages/{id}/context', handle_context)
    app.router.add_post('/api/context/lens', handle_context_lens)
    app.router.add_post('/api/node-positions', handle_node_positions)
    app.router.add_post('/api/relayout', handle_relayout)

    app.router.add_get('/api/conversations', handle_list_conversations)
    app.router.add_post('/api/conversations', handle_create_conversation)
    app.router.add_get('/api/conversations/{conversation_id}', handle_get_conversation)
    app.router.add_patch('/api/conversations/{conversation_id}', handle_rename_conversation)
    app.router.add_delete('/api/conversations/{conversation_id}', handle_delete_conversation)
    app.router.add_post('/api/conversations/{conversation_id}/select', handle_select_conversation)

    app.router.add_get('/api/canvases', handle_list_canvases)
    app.router.add_post('/api/canvases', handle_create_canvas)
    app.router.add_get('/api/canvases/{canvas_id}', handle_get_canvas)
    app.router.add_put('/api/canvases/{canvas_id}', handle_update_canvas)
    app.router.add_delete('/api/canvases/{canvas_id}', handle_delete_canvas)

    return app


async def main(host: str = '0.0.0.0', port: int = 8766, data_dir: Optional[Path] = None,
               conversation_id: str = 'default'):
    """Run the web server."""
    store = JsonlForestStore(data_dir or DATA_DIR)
    if store.get_conversation(conversation_id) is None:
        store.create_conversation(conversation_id=conversation_id)
    session = ConversationSession(conversation_id, store=store, responder=SSEResponder())
    session.load()
    app = create_app(session)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Branchflow running at http://{host}:{port}")
    logger.info(f"Data: {store.data_dir}")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()


def cli():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description='Branchflow Web Server')
    parser.add_argument('--host', default='0.0.0.0', help='Host to bind to')
    parser.add_argument('--port', type=int, default=8766, help='Port to listen on')
    parser.add_argument('--data-dir', type=Path, default=DATA_DIR, help='Where conversations are stored')
    parser.add_argument('--conversation', default='default', help='Conversation id to open')
    args = parser.parse_args()

    try:
        asyncio.run(main(host=args.host, port=args.port, data_dir=args.data_dir,
                         conversation_id=args.conversation))
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == '__main__':
    cli()
