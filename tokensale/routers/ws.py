"""WebSocket router - /ws/events endpoint (admin only)."""

from fastapi import FastAPI, Header, Query, WebSocket


def register(app: FastAPI):
    @app.websocket("/ws/events")
    async def ws_events(
        ws: WebSocket,
        api_key: str = Query(default=""),
        token: str = Query(default=""),
        x_api_key: str = Header(default=""),
    ):
        srv = app.state.server
        if srv.event_stream is None:
            await ws.close(code=1013, reason="Service unavailable")
            return
        caller = await srv.auth.authorize_stream(api_key=x_api_key or api_key, token=token)
        if caller is None:
            await ws.close(code=1008, reason="Admin credentials required")
            return
        await srv.event_stream.serve(ws)
