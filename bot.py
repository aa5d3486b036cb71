import os
import io
import logging
from pathlib import Path
from dotenv import load_dotenv
from telegram import Update, InputFile
from telegram.constants import ParseMode
import html as _html
from telegram.ext import Application, CommandHandler, MessageHandler, filters, ContextTypes
from typing import Dict, Any, List, Optional
import mutuals
from mutuals import FOLLOWERS, FOLLOWING, ROLES, ExportError, classify, profile_url
from export_session import ExportSession

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_LIMIT = 15


def preview_limit_from_env(raw: Optional[str]) -> int:
    if not raw:
        return DEFAULT_PREVIEW_LIMIT
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        logger.warning("PREVIEW_LIMIT=%r is not a positive integer, using %d", raw, DEFAULT_PREVIEW_LIMIT)
        return DEFAULT_PREVIEW_LIMIT
    return value


script_dir = Path(__file__).parent
# Load .env from the working directory and from next to this script
load_dotenv(dotenv_path=Path(".env"))
load_dotenv(dotenv_path=script_dir / ".env")
TOKEN = os.getenv("TELEGRAM_TOKEN")
PROFILE_BASE_URL = os.getenv("PROFILE_BASE_URL", mutuals.PROFILE_BASE_URL)
PREVIEW_LIMIT = preview_limit_from_env(os.getenv("PREVIEW_LIMIT"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# chat id -> {"session": ExportSession, "stage": role armed by /followers or /following}
state: Dict[int, Dict[str, Any]] = {}

ROLE_FILES = {
    FOLLOWERS: "followers_1.json",
    FOLLOWING: "following.json",
}
ROLE_TITLES = {
    FOLLOWERS: "Подписчики",
    FOLLOWING: "Подписки",
}
CATEGORY_TITLES = {
    mutuals.MUTUAL: "Взаимные",
    mutuals.NOT_FOLLOWING_BACK: "Ты подписан, он(а) нет",
    mutuals.DONT_FOLLOW_BACK: "Он(а) подписан, ты нет",
    mutuals.UNKNOWN: "Не найден ни в followers, ни в following",
}


def get_state(chat: int) -> Dict[str, Any]:
    st = state.setdefault(chat, {})
    if "session" not in st:
        st["session"] = ExportSession()
    return st


def detect_role(caption: Optional[str], stage: Optional[str], file_name: Optional[str]) -> Optional[str]:
    """Caption wins, then the role armed by a command, then the export's file name."""
    if caption:
        word = caption.strip().lower().lstrip("/")
        if word in ROLES:
            return word
    if stage in ROLES:
        return stage
    name = (file_name or "").lower()
    for role in ROLES:
        if name.startswith(role):
            return role
    return None


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = (
        "👋😺 Привет! Я сравню подписчиков и подписки из выгрузки Instagram.\n\n"
        "Скачайте данные в Instagram (Настройки → Ваши действия → Скачать информацию, формат JSON) "
        f"и пришлите мне два файла: <code>{ROLE_FILES[FOLLOWERS]}</code> и <code>{ROLE_FILES[FOLLOWING]}</code>.\n\n"
        "Доступные команды:\n"
        "🐾 /followers — следующий файл считать подписчиками\n"
        "🐾 /following — следующий файл считать подписками\n"
        "🐾 /compare — сравнить загруженные файлы\n"
        "🐾 /why &lt;username&gt; — объяснить, почему ник попал в категорию\n"
        "🐾 /find &lt;pattern&gt; — найти ник по подстроке\n"
        "🐾 /status — что уже загружено\n"
        "🐾 /reset — забыть загруженные файлы\n\n"
        "Файлы нигде не сохраняются, я держу только списки ников до /reset. 😼"
    )
    await update.message.reply_text(text, parse_mode=ParseMode.HTML)


def error_text(err: ExportError) -> str:
    if isinstance(err, mutuals.MissingFileError):
        return f"Пришлите файл {ROLE_FILES[err.role]} ({ROLE_TITLES[err.role].lower()}), а не текст."
    if isinstance(err, mutuals.PreconditionError):
        return (
            f"Сначала загрузите оба файла: {ROLE_FILES[FOLLOWERS]} и {ROLE_FILES[FOLLOWING]}, "
            "потом запускайте /compare."
        )
    if isinstance(err, mutuals.JsonSyntaxError):
        return f"Не удалось разобрать {err.file_name}: это не корректный JSON. Скачайте выгрузку в формате JSON."
    if isinstance(err, mutuals.ShapeMismatchError):
        return f"Файл {err.file_name} не похож на {ROLE_FILES[err.role]} ({err.reason})."
    if isinstance(err, mutuals.FileReadError):
        return f"Не удалось скачать {err.file_name}. Отправьте файл ещё раз."
    return str(err)


async def reply_error(update: Update, session: ExportSession):
    await update.message.reply_text(f"❌🙀 {error_text(session.last_error)}")


async def arm_role(update: Update, role: str):
    st = get_state(update.effective_chat.id)
    st["stage"] = role
    await update.message.reply_text(f"Жду файл {ROLE_FILES[role]} ({ROLE_TITLES[role].lower()}). 😺")


async def followers_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await arm_role(update, FOLLOWERS)


async def following_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await arm_role(update, FOLLOWING)


async def document_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    st = get_state(update.effective_chat.id)
    session: ExportSession = st["session"]
    doc = update.message.document
    file_name = doc.file_name or ""
    role = detect_role(update.message.caption, st.get("stage"), file_name)
    if role is None:
        await update.message.reply_text(
            "Не понял, какой это файл. Подпишите его словом followers или following, "
            "либо сначала отправьте /followers или /following. 🐾"
        )
        return
    st["stage"] = None

    async def read():
        tg_file = await doc.get_file()
        return bytes(await tg_file.download_as_bytearray())

    try:
        names = await session.load(role, read, file_name)
    except ExportError:
        await reply_error(update, session)
        return
    if names is None:
        # a newer upload for the same role replaced this one
        return
    text = f"✅😺 {ROLE_TITLES[role]}: {len(names)} из {file_name or 'файла'}."
    if session.ready:
        text += "\nОба файла на месте, запускайте /compare"
    else:
        missing = FOLLOWING if role == FOLLOWERS else FOLLOWERS
        text += f"\nТеперь пришлите {ROLE_FILES[missing]}."
    await update.message.reply_text(text)


async def text_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    st = get_state(update.effective_chat.id)
    role = st.get("stage")
    if role not in ROLES:
        await update.message.reply_text("Я жду JSON-файлы выгрузки, а не текст. Отправьте /help для подсказки.")
        return
    session: ExportSession = st["session"]
    try:
        await session.load(role, None)
    except ExportError:
        await reply_error(update, session)


def preview_block(title: str, items: List[str], limit: int = PREVIEW_LIMIT) -> str:
    head = f"<b>{_html.escape(title)}</b> ({len(items)}) 😺"
    if not items:
        return head + "\n<i>пусто</i>\n"
    top = items[:limit]
    body = "\n".join(
        f'🐱 <a href="{_html.escape(profile_url(x, PROFILE_BASE_URL))}">{_html.escape(x)}</a>' for x in top
    )
    more = f"\n<i>и ещё {len(items) - limit}...</i>" if len(items) > limit else ""
    return f"{head}\n{body}{more}\n"


async def send_list(update: Update, filename: str, items):
    if not items:
        await update.message.reply_text(f"{filename}: пусто")
        return
    data = "\n".join(items).encode()
    await update.message.reply_document(document=InputFile(io.BytesIO(data), filename))


async def compare_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    st = get_state(update.effective_chat.id)
    session: ExportSession = st["session"]
    try:
        result = session.compare()
    except ExportError:
        await reply_error(update, session)
        return
    summary = (
        "<b>Сводка:</b> 😼\n"
        f"Всего followers: {len(session.followers)}\n"
        f"Всего following: {len(session.following)}\n\n"
        + preview_block(CATEGORY_TITLES[mutuals.NOT_FOLLOWING_BACK], result.not_following_back)
        + preview_block(CATEGORY_TITLES[mutuals.DONT_FOLLOW_BACK], result.dont_follow_back)
    )
    await update.message.reply_text(summary, parse_mode=ParseMode.HTML, disable_web_page_preview=True)
    await send_list(update, "not_following_back.txt", result.not_following_back)
    await send_list(update, "dont_follow_back.txt", result.dont_follow_back)


async def why_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    args = context.args
    if not args:
        await update.message.reply_text("Использование: /why <username>")
        return
    q = args[0].strip().lstrip("@")
    session: ExportSession = get_state(update.effective_chat.id)["session"]
    in_f1 = q in session.followers
    in_f2 = q in session.following
    cat = CATEGORY_TITLES[classify(q, session.followers, session.following)]
    await update.message.reply_text(
        f"Проверка @{q}:\nfollowers: {'да' if in_f1 else 'нет'}\nfollowing: {'да' if in_f2 else 'нет'}\nКатегория: {cat}"
    )


async def find_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    args = context.args
    if not args:
        await update.message.reply_text("Использование: /find <pattern>")
        return
    pat = args[0].lower()
    session: ExportSession = get_state(update.effective_chat.id)["session"]
    f1 = [x for x in session.followers if pat in x.lower()][:10]
    f2 = [x for x in session.following if pat in x.lower()][:10]
    await update.message.reply_text(f"Поиск '{pat}':\nfollowers ({len(f1)}): {', '.join(f1)}\nfollowing ({len(f2)}): {', '.join(f2)}")


async def status_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    session: ExportSession = get_state(update.effective_chat.id)["session"]
    lines = []
    for role in ROLES:
        name = session.file_names[role]
        if name or session.sets[role]:
            lines.append(f"{ROLE_TITLES[role]}: {len(session.sets[role])} ({name or 'без имени'})")
        else:
            lines.append(f"{ROLE_TITLES[role]}: не загружено")
    if session.last_error:
        lines.append(f"Последняя ошибка: {error_text(session.last_error)}")
    await update.message.reply_text("\n".join(lines))


async def reset_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    st = get_state(update.effective_chat.id)
    st["session"].reset()
    st["stage"] = None
    await update.message.reply_text("Готово, всё забыл. Присылайте файлы заново. 😺")


async def unknown_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(
        "Неизвестная команда. Доступные: /followers, /following, /compare, /why, /find, /status, /reset, /help."
    )


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    logger.error("Unhandled error while processing an update", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text("Произошла ошибка. Попробуйте ещё раз чуть позже.")
        except Exception:
            logger.exception("Could not report the error to the chat")


def build_application(token: str) -> Application:
    app = Application.builder().token(token).build()
    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("help", start))
    app.add_handler(CommandHandler("followers", followers_cmd))
    app.add_handler(CommandHandler("following", following_cmd))
    app.add_handler(CommandHandler("compare", compare_cmd))
    app.add_handler(CommandHandler("why", why_cmd))
    app.add_handler(CommandHandler("find", find_cmd))
    app.add_handler(CommandHandler("status", status_cmd))
    app.add_handler(CommandHandler("reset", reset_cmd))
    app.add_handler(MessageHandler(filters.Document.ALL, document_handler))
    app.add_handler(MessageHandler(filters.TEXT & (~filters.COMMAND), text_handler))
    # Должен идти после всех команд, чтобы перехватывать неизвестные
    app.add_handler(MessageHandler(filters.COMMAND, unknown_cmd))
    app.add_error_handler(error_handler)
    return app


def main():
    if not TOKEN:
        raise RuntimeError("TELEGRAM_TOKEN is not set")
    logging.basicConfig(
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        level=LOG_LEVEL.upper(),
    )
    # reduce httpx logging noise (one line per getUpdates poll)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    app = build_application(TOKEN)
    # Allow running under WSGI thread without installing signal handlers
    if os.getenv("PTB_NO_SIGNALS") == "1":
        app.run_polling(stop_signals=None)
    else:
        app.run_polling()


if __name__ == "__main__":
    main()
