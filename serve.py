# serve.py
# ============================
# EVENTLET MONKEY PATCH (MUST BE FIRST)
# ============================
import eventlet
eventlet.monkey_patch()

# ============================
# NORMAL IMPORTS
# ============================
import os

from app import create_app, socketio
from config import Config


class ServerConfig(Config):
    SOCKETIO_ASYNC_MODE = "eventlet"


app = create_app(ServerConfig)

if __name__ == "__main__":
    print("RapidRed matching engine starting...")
    socketio.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
