import argparse, json, logging, os, sys

from .config import load_settings
from .decision import Decision
from .errors import ModerationError, RemoteError
from .orchestrator import LiteSlot, build_lite_tier, build_orchestrator

log = logging.getLogger(__name__)


def _pct(scores: dict) -> dict:
    return {k: f"{v * 100:.1f}%" for k, v in scores.items()}


def format_chat(decision: Decision, topk: int = 3) -> str:
    emoji = {"allow": "🟢", "warn": "🟡", "block": "🔴"}.get(decision.action, "▫️")
    top = sorted(decision.scores.items(), key=lambda kv: kv[1], reverse=True)[:topk]
    lines = [
        f"{emoji} Action: **{decision.action.upper()}** ({decision.label})",
        f"Source: {decision.source}",
        f"Scores: {', '.join(f'{k}={v}' for k, v in _pct(dict(top)).items())}",
    ]
    if decision.reason:
        lines.append(f"Why: {decision.reason}")
    if decision.should_request_review:
        lines.append("• Review available")
    return "\n".join(lines)


def _texts(args):
    if args.text:
        yield None, args.text
        return
    path = args.file
    with open(path, encoding="utf-8") as f:
        if not path.lower().endswith(".jsonl"):
            yield None, f.read()
            return
        for idx, line in enumerate(f):
            line = line.strip()
            if not line:
                continue
            obj = json.loads(line)
            yield obj.get("id", idx), obj.get("text", "")


def main(argv=None):
    ap = argparse.ArgumentParser(description="Run text through the moderation pipeline")
    ap.add_argument("--text", help="Inline text to check")
    ap.add_argument("--file", help=".txt (single) or .jsonl (one {'text'} object per line)")
    ap.add_argument("--format", choices=["json", "chat"], default="json",
                    help="Output style: json (default) or chat")
    ap.add_argument("--no-lite", action="store_true", help="Skip the in-process model, backend only")
    ap.add_argument("--wait-warm", action="store_true",
                    help="Load the lite model before the first check instead of falling back while cold")
    ap.add_argument("--config", help="Settings YAML (default: $MODERATION_CONFIG or config/moderation.yaml)")
    ap.add_argument("--topk", type=int, default=3, help="Scores to show in chat mode")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not (args.text or args.file):
        print("Provide --text or --file", file=sys.stderr)
        return 1

    settings = load_settings(args.config)
    if args.no_lite:
        settings.flags.lite_enabled = False
    lite_config = settings.lite_config()
    slot = None
    if settings.flags.lite_enabled and lite_config is not None:
        slot = LiteSlot(lambda: build_lite_tier(settings, lite_config))
    orchestrator = build_orchestrator(settings, slot=slot)

    if args.wait_warm and slot is not None:
        try:
            slot.get().client.init(base_url=settings.lite.artifact_base_url)
        except ModerationError as e:
            log.warning("lite warmup failed, continuing with backend: %s", e)

    status = 0
    try:
        for item_id, text in _texts(args):
            try:
                decision = orchestrator.check(text)
            except RemoteError as e:
                print(json.dumps({"id": item_id, "error": str(e)}) if item_id is not None
                      else f"error: {e}", file=sys.stderr)
                status = 2
                continue
            if args.format == "chat":
                print(format_chat(decision, args.topk))
            else:
                out = decision.to_wire()
                print(json.dumps({"id": item_id, **out} if item_id is not None else out))
    finally:
        if orchestrator.telemetry is not None:
            orchestrator.telemetry.close()
        if slot is not None:
            slot.close()
    return status


def serve(argv=None):
    import uvicorn

    ap = argparse.ArgumentParser(description="Run the moderation HTTP service")
    ap.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    ap.add_argument("--reload", action="store_true")
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("moderation.app:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
