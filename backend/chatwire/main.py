"""FastAPI application entrypoint.

Serve `chatwire.main:socket_app` so Socket.IO and the HTTP routes share one
ASGI process.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatwire.api import chat, ops, users
from chatwire.api.errors import install_error_handlers
from chatwire.context import ChatContext
from chatwire.domain.chat.sockets import ChatNamespace, SocketIOTransport
from chatwire.infra.redis import close_redis
from chatwire.obs import init as obs_init
from chatwire.obs import tracing
from chatwire.settings import settings

allow_origins = list(settings.cors_allow_origins)
if not allow_origins or "*" in allow_origins:
	# Starlette rejects a wildcard together with allow_credentials=True.
	allow_origins = ["http://localhost:3000", "http://localhost:5173"] if settings.is_dev() else []

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)


@asynccontextmanager
async def lifespan(app: FastAPI):
	context = await ChatContext.build(SocketIOTransport(sio))
	await context.start()
	sio.register_namespace(ChatNamespace(context))
	app.state.chat = context
	try:
		yield
	finally:
		app.state.chat = None
		await context.close()
		await close_redis()
		tracing.shutdown_tracing()


app = FastAPI(title="Chatwire", lifespan=lifespan)
install_error_handlers(app)

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(users.router)
app.include_router(chat.router)
app.include_router(ops.router)
