from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from telegram import Update
from telegram.ext import (
    AIORateLimiter,
    Application,
    CommandHandler,
    ContextTypes,
)

from .commands import PomBlockApp, build_app_from_env
from .errors import PomblockError
from .models import Block, RemoteEvent, Task
from .parsing import parse_day_arg, parse_task_line
from .pomodoro import PomodoroSnapshot

log = logging.getLogger("pomblock")


HELP = (
    "Команды:\n"
    "/auth [code] — подключить Google Calendar\n"
    "/sync [from] [to] — синхронизировать календарь блоков\n"
    "/generate [today|tomorrow|+N|YYYY-MM-DD] — заполнить день блоками\n"
    "/one [день] — добавить один блок\n"
    "/blocks [день] — показать блоки\n"
    "/approve <id> [id...] — подтвердить черновики\n"
    "/move <id> <start> <end> — перенести блок (RFC3339)\n"
    "/delete <id> — удалить блок\n"
    "/relocate <id> — переставить блок при конфликте\n"
    "/events [from] [to] — события из календаря\n"
    "/task <название> [3p|50m|2h] — новая задача\n"
    "/tasks — список задач\n"
    "/done <id> — отметить выполненной\n"
    "/split <id> <n> — разбить задачу на части\n"
    "/carry <task> <block> — перенести задачу на следующий свободный блок\n"
    "/focus <block> [task] — начать помодоро\n"
    "/next — следующая фаза\n"
    "/pause [причина] /resume /stop — управление таймером\n"
    "/state — текущее состояние таймера\n"
    "/reflect [from] [to] — итоги (по умолчанию 7 дней)\n"
)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _hhmm(dt: datetime, app: PomBlockApp) -> str:
    tz = app.config.policy(now=datetime.now(timezone.utc)).zone
    return dt.astimezone(tz).strftime("%H:%M")


def _format_block(b: Block, app: PomBlockApp) -> str:
    remote = " ☁" if b.calendar_event_id else ""
    return (
        f"{b.id}: {b.date.isoformat()} {_hhmm(b.start_at, app)}-{_hhmm(b.end_at, app)} "
        f"{b.block_type} [{b.firmness}] x{b.planned_cycles}{remote}"
    )


def _format_task(t: Task) -> str:
    est = f"{t.completed_cycles}/{t.estimated_cycles}" if t.estimated_cycles else f"{t.completed_cycles}"
    return f"{t.id}. [{t.status}] {t.title} ({est}p)"


def _format_event(e: RemoteEvent, app: PomBlockApp) -> str:
    return f"{_hhmm(e.start_at, app)}-{_hhmm(e.end_at, app)} {e.title or '(без названия)'}"


def _format_state(s: PomodoroSnapshot) -> str:
    if s.current_block_id is None:
        return f"Таймер: {s.phase}"
    mins, secs = divmod(s.remaining_seconds, 60)
    task = f", задача {s.current_task_id}" if s.current_task_id else ""
    paused = f" ({s.paused_phase})" if s.paused_phase else ""
    return (
        f"Блок {s.current_block_id}{task}\n"
        f"Фаза: {s.phase}{paused}, осталось {mins:02d}:{secs:02d}\n"
        f"Цикл {s.current_cycle}/{s.total_cycles}, завершено {s.completed_cycles}"
    )


class BotApp:
    def __init__(self, app: PomBlockApp) -> None:
        self.app = app
        self.scheduler = AsyncIOScheduler()

        # in-memory: chats that get auto-generation notices
        self._chats: set[int] = set()
        self._first_tick = True

    def _today(self):
        policy = self.app.config.policy(now=datetime.now(timezone.utc))
        return datetime.now(policy.zone).date()

    async def _guarded(
        self,
        update: Update,
        action: Callable[[], Awaitable[str]],
    ) -> None:
        assert update.message
        try:
            text = await action()
        except PomblockError as exc:
            await update.message.reply_text(f"Ошибка: {exc}")
            return
        await update.message.reply_text(text)

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_chat and update.message
        self._chats.add(int(update.effective_chat.id))
        await update.message.reply_text(
            "Привет! Я раскладываю рабочий день на фокус-блоки и веду помодоро.\n\n"
            "1) Подключи календарь: /auth\n"
            "2) Заполни день: /generate\n\n"
            + HELP
        )

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message:
            await update.message.reply_text(HELP)

    async def cmd_auth(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        code = context.args[0] if context.args else None

        async def action() -> str:
            res = await self.app.authenticate_google(code=code)
            if res.authorization_url:
                return (
                    "Открой ссылку, разреши доступ и пришли код командой /auth <code>:\n"
                    f"{res.authorization_url}"
                )
            return f"Google Calendar подключён ({res.status})."

        await self._guarded(update, action)

    async def cmd_sync(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        args = context.args or []

        async def action() -> str:
            res = await self.app.sync_calendar(
                time_min=args[0] if len(args) > 0 else None,
                time_max=args[1] if len(args) > 1 else None,
            )
            return (
                f"Синхронизировано: +{res.added} ~{res.updated} -{res.deleted}, "
                f"подавлено {res.suppressed}, перенесено {res.relocated}."
            )

        await self._guarded(update, action)

    async def _generate_reply(self, update: Update, context: ContextTypes.DEFAULT_TYPE, *, single: bool) -> None:
        arg = context.args[0] if context.args else None

        async def action() -> str:
            day = parse_day_arg(arg, self._today()).isoformat()
            if single:
                blocks = await self.app.generate_one_block(day)
            else:
                blocks = await self.app.generate_blocks(day)
            if not blocks:
                return f"На {day} новых блоков нет (выходной или день уже заполнен)."
            return "\n".join([f"Новые блоки на {day}:"] + [_format_block(b, self.app) for b in blocks])

        await self._guarded(update, action)

    async def cmd_generate(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._generate_reply(update, context, single=False)

    async def cmd_one(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._generate_reply(update, context, single=True)

    async def cmd_blocks(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        arg = context.args[0] if context.args else None

        async def action() -> str:
            day = parse_day_arg(arg, self._today()).isoformat()
            blocks = await self.app.list_blocks(day)
            if not blocks:
                return f"На {day} блоков нет. Используй /generate."
            return "\n".join(_format_block(b, self.app) for b in blocks)

        await self._guarded(update, action)

    async def cmd_approve(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args:
            await update.message.reply_text("Использование: /approve <id> [id...]")
            return
        ids = list(context.args)

        async def action() -> str:
            blocks = await self.app.approve_blocks(ids)
            return "\n".join(["Подтверждено:"] + [_format_block(b, self.app) for b in blocks])

        await self._guarded(update, action)

    async def cmd_move(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args or len(context.args) < 3:
            await update.message.reply_text("Использование: /move <id> <start> <end>")
            return
        block_id, start, end = context.args[:3]

        async def action() -> str:
            block = await self.app.adjust_block_time(block_id, start, end)
            return f"Перенесено: {_format_block(block, self.app)}"

        await self._guarded(update, action)

    async def cmd_delete(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args:
            await update.message.reply_text("Использование: /delete <id>")
            return
        block_id = context.args[0]

        async def action() -> str:
            deleted = await self.app.delete_block(block_id)
            return "Блок удалён." if deleted else "Такого блока нет."

        await self._guarded(update, action)

    async def cmd_relocate(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args:
            await update.message.reply_text("Использование: /relocate <id>")
            return
        block_id = context.args[0]

        async def action() -> str:
            block = await self.app.relocate_if_needed(block_id)
            return _format_block(block, self.app)

        await self._guarded(update, action)

    async def cmd_events(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        args = context.args or []

        async def action() -> str:
            events = await self.app.list_synced_events(
                time_min=args[0] if len(args) > 0 else None,
                time_max=args[1] if len(args) > 1 else None,
            )
            if not events:
                return "Событий нет. Сначала /sync."
            return "\n".join(_format_event(e, self.app) for e in events)

        await self._guarded(update, action)

    async def cmd_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        parsed = parse_task_line(" ".join(context.args or []))
        if parsed is None:
            await update.message.reply_text("Использование: /task Отчёт 3p (или 50m / 2h)")
            return

        async def action() -> str:
            task = await self.app.create_task(parsed.title, estimated_cycles=parsed.estimated_cycles)
            return f"Добавлено: {_format_task(task)}"

        await self._guarded(update, action)

    async def cmd_tasks(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def action() -> str:
            tasks = await self.app.list_tasks()
            if not tasks:
                return "Задач нет. Используй /task."
            return "\n".join(_format_task(t) for t in tasks)

        await self._guarded(update, action)

    async def cmd_done(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args:
            await update.message.reply_text("Использование: /done <id>")
            return
        task_id = context.args[0]

        async def action() -> str:
            await self.app.update_task(task_id, status="completed")
            return "Отмечено как выполнено."

        await self._guarded(update, action)

    async def cmd_split(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args or len(context.args) < 2 or not context.args[1].isdigit():
            await update.message.reply_text("Использование: /split <id> <n>")
            return
        task_id, parts = context.args[0], int(context.args[1])

        async def action() -> str:
            children = await self.app.split_task(task_id, parts)
            return "\n".join(["Разбито на:"] + [_format_task(t) for t in children])

        await self._guarded(update, action)

    async def cmd_carry(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args or len(context.args) < 2:
            await update.message.reply_text("Использование: /carry <task> <block>")
            return
        task_id, block_id = context.args[:2]

        async def action() -> str:
            block = await self.app.carry_over_task(task_id, block_id)
            return f"Задача перенесена на {_format_block(block, self.app)}"

        await self._guarded(update, action)

    async def cmd_focus(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.message
        if not context.args:
            await update.message.reply_text("Использование: /focus <block> [task]")
            return
        block_id = context.args[0]
        task_id = context.args[1] if len(context.args) > 1 else None

        async def action() -> str:
            return _format_state(await self.app.start_pomodoro(block_id, task_id))

        await self._guarded(update, action)

    async def cmd_next(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def action() -> str:
            return _format_state(await self.app.advance_pomodoro())

        await self._guarded(update, action)

    async def cmd_pause(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        reason = " ".join(context.args or []) or None

        async def action() -> str:
            return _format_state(await self.app.pause_pomodoro(reason))

        await self._guarded(update, action)

    async def cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def action() -> str:
            return _format_state(await self.app.resume_pomodoro())

        await self._guarded(update, action)

    async def cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def action() -> str:
            await self.app.complete_pomodoro()
            return "Сессия завершена."

        await self._guarded(update, action)

    async def cmd_state(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def action() -> str:
            return _format_state(await self.app.get_pomodoro_state())

        await self._guarded(update, action)

    async def cmd_reflect(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        args = context.args or []

        async def action() -> str:
            s = await self.app.get_reflection_summary(
                start=args[0] if len(args) > 0 else None,
                end=args[1] if len(args) > 1 else None,
            )
            return (
                f"С {s.start.date().isoformat()} по {s.end.date().isoformat()}:\n"
                f"- завершено фокус-сессий: {s.completed_count}\n"
                f"- прервано: {s.interrupted_count}\n"
                f"- минут в фокусе: {s.total_focus_minutes}"
            )

        await self._guarded(update, action)

    async def on_startup(self, app: Application) -> None:
        self.scheduler.start()

    async def on_shutdown(self, app: Application) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.app.aclose()

    def register_recurring_jobs(self, app: Application) -> None:
        self.scheduler.add_job(
            func=self._generation_tick,
            args=[app],
            trigger=CronTrigger(minute="*/5"),
            id="generation-tick",
            replace_existing=True,
        )

    async def _generation_tick(self, app: Application) -> None:
        catch_up = self._first_tick
        self._first_tick = False
        try:
            blocks = await self.app.run_auto_generation(catch_up=catch_up)
        except PomblockError as exc:
            log.error("Auto-generation failed: %s", exc)
            return
        if not blocks:
            return
        text = "\n".join(["Блоки на сегодня готовы:"] + [_format_block(b, self.app) for b in blocks])
        for chat_id in sorted(self._chats):
            await app.bot.send_message(chat_id=chat_id, text=text)


def build_application(bot_app: BotApp) -> Application:
    token = _env("TELEGRAM_TOKEN")
    if not token:
        raise RuntimeError("TELEGRAM_TOKEN is required")

    app = (
        Application.builder()
        .token(token)
        .rate_limiter(AIORateLimiter())
        .post_init(bot_app.on_startup)
        .post_shutdown(bot_app.on_shutdown)
        .build()
    )

    handlers: dict[str, Callable] = {
        "start": bot_app.cmd_start,
        "help": bot_app.cmd_help,
        "auth": bot_app.cmd_auth,
        "sync": bot_app.cmd_sync,
        "generate": bot_app.cmd_generate,
        "one": bot_app.cmd_one,
        "blocks": bot_app.cmd_blocks,
        "approve": bot_app.cmd_approve,
        "move": bot_app.cmd_move,
        "delete": bot_app.cmd_delete,
        "relocate": bot_app.cmd_relocate,
        "events": bot_app.cmd_events,
        "task": bot_app.cmd_task,
        "tasks": bot_app.cmd_tasks,
        "done": bot_app.cmd_done,
        "split": bot_app.cmd_split,
        "carry": bot_app.cmd_carry,
        "focus": bot_app.cmd_focus,
        "next": bot_app.cmd_next,
        "pause": bot_app.cmd_pause,
        "resume": bot_app.cmd_resume,
        "stop": bot_app.cmd_stop,
        "state": bot_app.cmd_state,
        "reflect": bot_app.cmd_reflect,
    }
    for name, callback in handlers.items():
        app.add_handler(CommandHandler(name, callback))

    bot_app.register_recurring_jobs(app)
    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    bot_app = BotApp(build_app_from_env())
    app = build_application(bot_app)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
