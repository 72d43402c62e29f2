#!/usr/bin/env python3
"""
Lite artifact preflight validator.

Run before deploying to make sure the directory served by GET /moderation/model
holds a usable lite model: an ONNX graph (or HF weights + config.json), a
tokenizer file, and an id2label mapping that matches the configured labels.

Usage:
  python scripts/artifact_preflight.py [--path DIR] [--config config/moderation.yaml]

Exit non-zero on failure so CI/CD can block deploys.
"""
import argparse, json, sys

from moderation.config import load_settings
from moderation.model_loader import validate_artifacts


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--path", default=None, help="Artifact directory. Defaults to lite.artifact_dir from settings.")
    ap.add_argument("--config", default=None, help="Settings YAML")
    args = ap.parse_args()

    settings = load_settings(args.config)
    path = args.path or settings.lite.artifact_dir
    config = settings.lite_config()
    if config is None:
        print(json.dumps({"path": path, "ok": False, "reason": f"unknown lite model id: {settings.lite.model_id}"}, indent=2))
        sys.exit(2)

    res = validate_artifacts(path, config)
    print(json.dumps({"path": path, "model_id": config.id, **res}, indent=2))
    sys.exit(0 if res.get("ok") else 2)


if __name__ == "__main__":
    main()
