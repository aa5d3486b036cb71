import os
import sys
import asyncio
import threading
from flask import Flask
from dotenv import load_dotenv
from pathlib import Path

# Load env the same way bot.py does
script_dir = Path(__file__).parent
load_dotenv(dotenv_path=script_dir / ".env")
os.environ.setdefault("PTB_NO_SIGNALS", "1")

app = Flask(__name__)

_bot_thread_started = False


def _start_bot():
    # Import here to avoid side effects on module import
    try:
        import bot
        # polling needs an event loop of its own outside the main thread
        asyncio.set_event_loop(asyncio.new_event_loop())
        print("[wsgi] Starting Telegram bot thread...", flush=True)
        bot.main()
    except Exception as e:
        print(f"[wsgi] Bot thread crashed: {e}", file=sys.stderr, flush=True)
        raise


def _ensure_bot_thread():
    global _bot_thread_started
    if not _bot_thread_started:
        t = threading.Thread(target=_start_bot, name="telegram-bot", daemon=True)
        t.start()
        _bot_thread_started = True


# Start bot thread when the WSGI app is imported
_ensure_bot_thread()


@app.get("/")
def index():
    return "Follower comparison bot is running", 200


@app.get("/health")
def health():
    bot_alive = any(t.name == "telegram-bot" and t.is_alive() for t in threading.enumerate())
    return {"status": "ok", "bot_thread": bot_alive}, 200
