#!/usr/bin/env python3
"""
TraceCLI - Main Entry Point

A local activity observer: records which application and window you use,
categorizes the time, samples process resources and runs contextual focus
and pomodoro sessions.

Usage:
    python main.py start                 # Track activity until Ctrl-C
    python main.py focus 25 --goal "..." # Contextual focus run
    python main.py pomodoro              # Work/break cycles
    python main.py report                # Today's report
    python main.py heatmap               # Productivity heatmap
"""

import sys
import time
import signal
import logging
import argparse
import threading
from datetime import date, timedelta
from typing import Dict, Optional

import config
from core.errors import LockConflictError, TraceError
from tracking.analytics import format_duration, format_memory, generate_summary_text
from tracking.categorizer import get_category_emoji

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "waiting_for_context": "⏳ Waiting for work window...",
    "focused": "⭐ Focused",
    "distracted": "⚠️  Distracted",
    "neutral": "➖ Neutral",
}

HEATMAP_LEVELS = "░▒▓█"


def setup_logging() -> None:
    """Configure logging once for the whole process."""
    handlers = [logging.StreamHandler()]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT,
        handlers=handlers,
    )

    # Suppress noisy third-party library logs (HTTP requests, etc.)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)


def _open_store():
    from tracking.store import SessionStore
    return SessionStore()


def _parse_date(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def _install_sigterm(stop_event: threading.Event) -> None:
    """Treat SIGTERM like Ctrl-C: set the stop event so the main loop shuts down in order."""
    def handler(signum, frame):
        stop_event.set()
    try:
        signal.signal(signal.SIGTERM, handler)
    except (ValueError, OSError) as e:
        logger.debug(f"Could not install SIGTERM handler: {e}")


def _render_focus(snapshot: Dict) -> None:
    status = STATUS_LABELS.get(snapshot["status"], snapshot["status"])
    if snapshot["phase"] == "break":
        line = f"☕ {snapshot['goal']} | Remaining: {format_duration(snapshot['remaining'])}"
    else:
        target = snapshot["target"] or 1
        progress = min(100.0, snapshot["focus_seconds"] / target * 100)
        bar_len = int(progress / 5)
        bar = "█" * bar_len + "░" * (20 - bar_len)
        locked = snapshot["locked_app"] or "-"
        line = (
            f"{status} | Locked: {locked} | {bar} {progress:.0f}% | "
            f"Score: {snapshot['score']:.0f}% | Interruptions: {snapshot['interruptions']}"
        )
    sys.stdout.write("\r" + line[:150].ljust(150))
    sys.stdout.flush()


def _print_focus_result(record) -> None:
    if record is None:
        return
    print("\n" + "=" * 60)
    print("📈 Focus Summary")
    print("=" * 60)
    print(f"🎯 Goal: {record.goal_label}")
    print(f"⏱️  Focused: {format_duration(record.actual_focus_seconds)} / {record.target_minutes} min")
    print(f"⚠️  Distracted: {format_duration(record.distraction_seconds)}")
    print(f"🔁 Interruptions: {record.interruption_count}")
    print(f"🏆 Score: {record.focus_score:.0f}%")
    print("=" * 60 + "\n")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_start(args) -> int:
    """Track activity until Ctrl-C, optionally with a focus run attached."""
    from core.engine import TrackingEngine
    from screen.window_detector import WindowDetector

    detector = WindowDetector()
    if not detector.check_permission():
        print("\n⚠️  Could not read the active window.")
        print(detector.get_permission_instructions())

    store = _open_store()
    engine = TrackingEngine(
        store,
        observer=detector,
        enable_browser_sync=not args.no_browser and config.BROWSER_SYNC_ENABLED,
        rules=config.load_rules(),
    )

    focus = None
    if args.focus:
        focus = _build_focus(args.focus, args.goal, store, detector, on_update=None)
        try:
            focus.start()
        except LockConflictError as e:
            print(f"\n⚠️  {e}")
            print("Please stop it before starting a new one.\n")
            store.close()
            return 1
        engine.attach_focus(focus)

    stop_event = threading.Event()
    _install_sigterm(stop_event)

    engine.start()
    print("\n🔍 Tracking activity. Press Ctrl-C to stop.\n")
    try:
        while not stop_event.is_set():
            status = engine.get_status()
            current = status["current_session"]
            if current is not None:
                line = (
                    f"{get_category_emoji(current.category)} {current.app_name} - {current.window_title[:50]} "
                    f"({format_duration(current.duration_seconds)}) | "
                    f"Logged: {status['total_logged']} | Switches: {status['total_switches']}"
                )
                sys.stdout.write("\r" + line[:150].ljust(150))
                sys.stdout.flush()
            time.sleep(1)
    except KeyboardInterrupt:
        pass

    print("\n\n⏸️  Stopping...")
    result = engine.stop()
    store.close()

    stats = result.get("daily_stats")
    if stats is not None:
        print(f"\n{generate_summary_text(stats)}")
    _print_focus_result(result.get("focus_record"))
    return 0


def _build_focus(minutes: int, goal: Optional[str], store, observer, on_update):
    from ai.relevance import RelevanceOracle
    from core.focus import FocusEngine
    return FocusEngine(
        minutes,
        goal or config.DEFAULT_FOCUS_GOAL,
        observer=observer,
        oracle=RelevanceOracle(),
        store=store,
        on_update=on_update,
    )


def _run_focus(engine, store) -> int:
    try:
        engine.start()
    except LockConflictError as e:
        print(f"\n⚠️  {e}")
        print("Please stop it before starting a new one.\n")
        store.close()
        return 1

    stop_event = threading.Event()
    _install_sigterm(stop_event)
    try:
        while not stop_event.is_set() and not engine.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass

    record = engine.stop()
    store.close()
    _print_focus_result(record)
    return 0


def cmd_focus(args) -> int:
    from screen.window_detector import WindowDetector

    store = _open_store()
    engine = _build_focus(args.minutes, args.goal, store, WindowDetector(), on_update=_render_focus)
    engine.on_complete = lambda snapshot: print("\n\n✨ Goal Reached! Focus session complete.")

    print(f"\n🔥 Focus Session Started: {engine.state.goal_label}")
    print(f"   Goal: {args.minutes} minutes. Stay focused!")
    print("   💡 Switch to your work window to lock context.\n")
    return _run_focus(engine, store)


def cmd_pomodoro(args) -> int:
    from ai.relevance import RelevanceOracle
    from core.focus import Phase, PomodoroTimer
    from screen.window_detector import WindowDetector

    def announce(phase, label):
        if phase == Phase.BREAK:
            print(f"\n\n🔔 WORK SESSION COMPLETE! Time for a {label}.")
        else:
            print("\n\n🔔 BREAK OVER! Let's get back to focus.")

    store = _open_store()
    timer = PomodoroTimer(
        work_minutes=args.work,
        short_break_minutes=args.short_break,
        long_break_minutes=args.long_break,
        goal=args.goal,
        on_phase_change=announce,
        observer=WindowDetector(),
        oracle=RelevanceOracle(),
        store=store,
        on_update=_render_focus,
    )
    print(f"\n🍅 Pomodoro started: {timer.work_minutes} min work / {timer.short_break_minutes} min break")
    print("   Press Ctrl-C to stop.\n")
    return _run_focus(timer, store)


def cmd_report(args) -> int:
    day = _parse_date(args.date)
    store = _open_store()
    try:
        stats = store.recompute_aggregates(day)
        print("\n" + "=" * 60)
        print(f"📊 Activity Report - {day.isoformat()}")
        print("=" * 60)
        print(f"\n{generate_summary_text(stats)}\n")
        if stats.total_seconds <= 0:
            return 0

        print(f"⏱️  Total: {format_duration(stats.total_seconds)}  "
              f"🎯 Productive: {format_duration(stats.productive_seconds)} ({stats.productivity_score:.0f}%)  "
              f"⚠️  Distraction: {format_duration(stats.distraction_seconds)}")

        print("\nCategories:")
        for row in store.get_category_breakdown(day):
            share = row["total_seconds"] / stats.total_seconds * 100
            print(f"  {get_category_emoji(row['category'])} {row['category']:<15} "
                  f"{format_duration(row['total_seconds']):>16}  {share:5.1f}%")

        print("\nTop apps:")
        for app in store.get_app_usage(day)[:10]:
            print(f"  {app.app_name:<30} {format_duration(app.total_duration):>16}  "
                  f"{app.launch_count:>4} sessions  {format_memory(app.avg_memory_mb):>10}")

        searches = store.query_searches(day)
        if searches:
            print("\nSearches:")
            for s in searches[:10]:
                print(f"  🔎 [{s['source']}] {s['query']}")

        domains = store.get_domain_breakdown(day)
        if domains:
            print("\nTop domains:")
            for d in domains[:10]:
                print(f"  🌐 {d['domain']:<35} {d['visit_count']:>4} visits")

        focus_runs = store.query_focus_sessions(day)
        if focus_runs:
            print("\nFocus runs:")
            for f in focus_runs:
                print(f"  🧘 {f['goal_label']:<20} {format_duration(f['actual_focus_seconds']):>16}  "
                      f"score {f['focus_score']:.0f}%")

        memory_apps = store.get_top_memory_apps(day, limit=5)
        if memory_apps:
            print(f"\nHeaviest processes ({store.get_snapshot_count(day)} samples):")
            for m in memory_apps:
                print(f"  💾 {m['app_name']:<30} avg {format_memory(m['avg_memory_mb'])}, "
                      f"peak {format_memory(m['peak_memory_mb'])}")
        print()
    finally:
        store.close()
    return 0


def cmd_week(args) -> int:
    store = _open_store()
    try:
        today = date.today()
        stats = store.get_stats_range(7)
        streak = store.get_streak_info(today)
        print("\n📅 Last 7 tracked days\n")
        if not stats:
            print("No activity tracked yet.")
            return 0
        for s in stats:
            bar = "█" * int(s.productivity_score / 5)
            print(f"  {s.date}  {format_duration(s.total_seconds):>16}  {s.productivity_score:5.1f}%  {bar}")
        print(f"\n🔥 Current streak: {streak['current_streak']} days  "
              f"🏆 Longest: {streak['longest_streak']} days  "
              f"📊 Days tracked: {streak['total_days_tracked']}\n")
    finally:
        store.close()
    return 0


def cmd_app(args) -> int:
    day = _parse_date(args.date)
    store = _open_store()
    try:
        analytics = store.get_app_analytics(args.name, day)
        if analytics is None:
            print(f"\nNo sessions for '{args.name}' on {day.isoformat()}.")
            tracked = store.get_all_tracked_apps()
            if tracked:
                print("Tracked apps: " + ", ".join(a["app_name"] for a in tracked[:15]))
            return 0

        print(f"\n📱 {args.name} on {day.isoformat()}")
        print(f"  Time: {format_duration(analytics['total_seconds'])} over {analytics['session_count']} sessions")
        print(f"  Memory: avg {format_memory(analytics['avg_memory_mb'] or 0)}, "
              f"peak {format_memory(analytics['peak_memory_mb'] or 0)}")
        print(f"  CPU: avg {analytics['avg_cpu'] or 0:.1f}%, peak {analytics['peak_cpu'] or 0:.1f}%")

        print("\n  Top windows:")
        for t in analytics["top_titles"][:10]:
            print(f"    {t['window_title'][:60]:<60} {format_duration(t['total_seconds']):>14}")

        history = store.get_app_history(args.name)
        if history:
            print("\n  History:")
            for h in history:
                print(f"    {h['date']}  {format_duration(h['total_seconds']):>16}")
        print()
    finally:
        store.close()
    return 0


def cmd_focus_stats(args) -> int:
    store = _open_store()
    try:
        stats = store.get_focus_stats()
        print("\n🧘 Focus statistics")
        print(f"  Runs: {stats['total_sessions']}")
        print(f"  Focused time: {format_duration(stats['total_focus_seconds'])}")
        print(f"  Average score: {stats['avg_focus_score']:.0f}%  (best {stats['best_score']:.0f}%)")
        print(f"  Interruptions: {stats['total_interruptions']}")
        recent = store.query_focus_sessions(limit=10)
        if recent:
            print("\n  Recent runs:")
            for f in recent:
                print(f"    {f['start_time'][:16]}  {f['goal_label']:<20} "
                      f"{format_duration(f['actual_focus_seconds']):>14}  {f['focus_score']:.0f}%")
        print()
    finally:
        store.close()
    return 0


def cmd_timeline(args) -> int:
    day = _parse_date(args.date)
    store = _open_store()
    try:
        sessions = list(reversed(store.query_sessions(day, limit=args.limit)))
        print(f"\n🕒 Timeline - {day.isoformat()}\n")
        if not sessions:
            print("No sessions recorded.\n")
            return 0
        for s in sessions:
            print(f"  {s.start_time:%H:%M:%S}-{s.end_time:%H:%M:%S}  {get_category_emoji(s.category)} "
                  f"{s.app_name[:24]:<24} {s.window_title[:44]:<44} {format_duration(s.duration_seconds):>14}")
        print()
    finally:
        store.close()
    return 0


def cmd_urls(args) -> int:
    day = _parse_date(args.date)
    store = _open_store()
    try:
        urls = store.query_browser_urls(day, limit=args.limit)
        print(f"\n🌐 Browser history - {day.isoformat()}\n")
        if not urls:
            print("No URLs synced. Browser history is read while 'tracecli start' runs.\n")
            return 0
        for u in urls:
            print(f"  {u['timestamp'][11:16]}  [{u['browser']}] {u['domain'][:28]:<28} {(u['title'] or u['url'])[:60]}")
        print()
    finally:
        store.close()
    return 0


def cmd_searches(args) -> int:
    day = _parse_date(args.date)
    store = _open_store()
    try:
        searches = store.query_searches(day)
        print(f"\n🔎 Searches - {day.isoformat()}\n")
        if not searches:
            print("No searches recorded.\n")
            return 0
        for s in searches:
            print(f"  {s['timestamp'][11:16]}  [{s['source']}] {s['query']}")
        print()
    finally:
        store.close()
    return 0


def cmd_system(args) -> int:
    from tracking.resource_sampler import get_running_processes, get_system_info

    info = get_system_info()
    print("\n🖥️  System")
    print(f"  RAM: {info.used_ram_gb:.1f} / {info.total_ram_gb:.1f} GB ({info.ram_percent:.0f}%)")
    print(f"  CPU: {info.cpu_percent:.0f}% across {info.cpu_count} cores")
    if info.disk_total_gb:
        print(f"  Disk: {info.disk_used_gb:.0f} / {info.disk_total_gb:.0f} GB ({info.disk_percent:.0f}%)")

    print(f"\n  Top processes by {args.sort}:")
    for p in get_running_processes(args.sort)[:args.limit]:
        print(f"    {p.pid:>7}  {p.app_name[:30]:<30} {format_memory(p.memory_mb):>10}  {p.cpu_percent:5.1f}%")

    store = _open_store()
    try:
        cpu_apps = store.get_top_cpu_apps(date.today(), limit=5)
    finally:
        store.close()
    if cpu_apps:
        print("\n  Busiest apps today (sampled):")
        for a in cpu_apps:
            print(f"    {a['app_name'][:30]:<30} avg {a['avg_cpu']:.1f}%, peak {a['peak_cpu']:.1f}%")
    print()
    return 0


def _heat_cell(score: Optional[float]) -> str:
    if score is None:
        return "·"
    return HEATMAP_LEVELS[min(len(HEATMAP_LEVELS) - 1, int(score // 25))]


def cmd_heatmap(args) -> int:
    today = date.today()
    store = _open_store()
    try:
        scores = {row["date"]: row["score"] for row in store.get_productivity_heatmap(args.weeks, today)}
    finally:
        store.close()

    # Columns are weeks starting on Monday, the last one holds today
    first = today - timedelta(days=today.weekday() + 7 * (args.weeks - 1))
    print(f"\n🗓️  Productivity, last {args.weeks} weeks\n")
    for weekday, name in enumerate(("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")):
        cells = []
        for week in range(args.weeks):
            day = first + timedelta(days=7 * week + weekday)
            cells.append(" " if day > today else _heat_cell(scores.get(day.isoformat())))
        print(f"  {name} {''.join(cells)}")
    print(f"\n  · no data  {' '.join(HEATMAP_LEVELS)}  low → high productivity\n")
    return 0


def cmd_insights(args) -> int:
    from ai.summariser import InsightsGenerator

    store = _open_store()
    try:
        print("\n💡 Generating insights...")
        result = InsightsGenerator(store).generate_insights(days=args.days)
        print("\n" + result["insights"] + "\n")
        if result["has_data"] and not result["success"]:
            print("(AI not available; showing basic insights. Set an API key in .env for AI insights.)\n")
    finally:
        store.close()
    return 0


def cmd_rules(args) -> int:
    rules = config.load_rules()
    changes = [
        ("productive_processes", args.productive_app),
        ("distraction_processes", args.distraction_app),
        ("productive_keywords", args.productive_keyword),
        ("distraction_keywords", args.distraction_keyword),
    ]
    changed = False
    for key, values in changes:
        for value in values or []:
            if value not in rules[key]:
                rules[key].append(value)
                changed = True
    for value in args.remove or []:
        for key in rules:
            if value in rules[key]:
                rules[key].remove(value)
                changed = True

    if changed:
        config.save_rules(rules)
        print(f"✓ Rules saved to {config.RULES_PATH}")

    print("\nCategorization rules:")
    for key, values in rules.items():
        print(f"  {key}: {', '.join(values) if values else '(none)'}")
    print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tracecli",
        description="TraceCLI - Activity tracking and contextual focus sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tracecli start                        Track activity until Ctrl-C
  tracecli focus 50 --goal "Thesis"     50 minute focus run
  tracecli report --date 2024-05-01     Report for a past day
        """
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("start", help="Track activity until Ctrl-C")
    p.add_argument("--no-browser", action="store_true", help="Disable browser history sync")
    p.add_argument("--focus", type=int, metavar="MINUTES", help="Also run a focus session")
    p.add_argument("--goal", help="Goal label for the focus session")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("focus", help="Run a contextual focus session")
    p.add_argument("minutes", type=int, help="Focus target in minutes")
    p.add_argument("--goal", default=config.DEFAULT_FOCUS_GOAL, help="What you are working on")
    p.set_defaults(func=cmd_focus)

    p = sub.add_parser("pomodoro", help="Run pomodoro work/break cycles")
    p.add_argument("--work", type=int, default=config.POMODORO_WORK_MINUTES, help="Work minutes")
    p.add_argument("--short-break", type=int, default=config.POMODORO_SHORT_BREAK_MINUTES, help="Short break minutes")
    p.add_argument("--long-break", type=int, default=config.POMODORO_LONG_BREAK_MINUTES, help="Long break minutes")
    p.add_argument("--goal", help="Goal used to judge browser tabs")
    p.set_defaults(func=cmd_pomodoro)

    p = sub.add_parser("report", help="Show the activity report for a day")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("week", help="Show the last 7 tracked days")
    p.set_defaults(func=cmd_week)

    p = sub.add_parser("app", help="Show details for one application")
    p.add_argument("name", help="Application name as tracked (e.g. chrome.exe)")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.set_defaults(func=cmd_app)

    p = sub.add_parser("focus-stats", help="Show focus session statistics")
    p.set_defaults(func=cmd_focus_stats)

    p = sub.add_parser("timeline", help="List the sessions of a day in order")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.add_argument("--limit", type=int, default=100, help="Most recent sessions to show")
    p.set_defaults(func=cmd_timeline)

    p = sub.add_parser("urls", help="Show synced browser history for a day")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_urls)

    p = sub.add_parser("searches", help="Show search queries seen on a day")
    p.add_argument("--date", help="YYYY-MM-DD (default: today)")
    p.set_defaults(func=cmd_searches)

    p = sub.add_parser("system", help="Show current RAM/CPU/disk and the heaviest processes")
    p.add_argument("--sort", choices=("memory", "cpu"), default="memory")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_system)

    p = sub.add_parser("heatmap", help="Productivity heatmap of recent weeks")
    p.add_argument("--weeks", type=int, default=20)
    p.set_defaults(func=cmd_heatmap)

    p = sub.add_parser("insights", help="AI productivity digest for recent days")
    p.add_argument("--days", type=int, default=7, help="Days to summarise")
    p.set_defaults(func=cmd_insights)

    p = sub.add_parser("rules", help="Show or edit categorization rules")
    p.add_argument("--productive-app", action="append", metavar="NAME")
    p.add_argument("--distraction-app", action="append", metavar="NAME")
    p.add_argument("--productive-keyword", action="append", metavar="WORD")
    p.add_argument("--distraction-keyword", action="append", metavar="WORD")
    p.add_argument("--remove", action="append", metavar="VALUE", help="Remove a value from every rule list")
    p.set_defaults(func=cmd_rules)

    return parser


def main(argv=None):
    """Main entry point: parses arguments and runs the chosen command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    try:
        code = args.func(args)
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        code = 0
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except TraceError as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
