#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml
from kubernetes.client import ApiClient

from admission.src.manifests import build_webhook_configuration
from reconciler.src.__main__ import load_entrypoint
from reconciler.src.config import ConfigError, OperatorSettings, load_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render Mutating/ValidatingWebhookConfiguration manifests for an operator"
    )
    parser.add_argument(
        "--entrypoint",
        required=True,
        help="Operator module and attribute, e.g. 'my_operator.main:host'",
    )
    parser.add_argument("--name", help="Operator name (defaults to OPERATOR_NAME)")
    parser.add_argument("--namespace", help="Operator namespace (defaults to POD_NAMESPACE)")
    parser.add_argument("--webhook-url", help="Call webhooks at this base URL instead of the service")
    parser.add_argument(
        "--no-cert-manager",
        action="store_true",
        help="Omit the cert-manager CA injection annotation",
    )
    parser.add_argument("--output", "-o", help="Write manifests to this file instead of stdout")
    return parser.parse_args(argv)


def _settings_from_args(args: argparse.Namespace, base: OperatorSettings) -> OperatorSettings:
    overrides: dict[str, Any] = {}
    if args.name:
        overrides["name"] = args.name
    if args.namespace:
        overrides["pod_namespace"] = args.namespace
    if args.webhook_url:
        overrides["webhook_url"] = args.webhook_url
    if args.no_cert_manager:
        overrides["cert_manager_enabled"] = False
    return replace(base, **overrides)


def render(entrypoint: str, settings: OperatorSettings) -> str:
    host = load_entrypoint(entrypoint, settings)
    if not host.webhooks:
        return ""
    serializer = ApiClient()
    documents = [
        serializer.sanitize_for_serialization(build_webhook_configuration(webhook, settings))
        for webhook in host.webhooks
    ]
    return yaml.safe_dump_all(documents, sort_keys=False)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = _settings_from_args(args, load_settings())
        rendered = render(args.entrypoint, settings)
    except (ConfigError, ValueError) as exc:
        print(f"Unable to render webhook manifests: {exc}", file=sys.stderr)
        return 1

    if not rendered:
        print("Operator registers no webhooks; nothing to render", file=sys.stderr)
        return 0
    if args.output:
        Path(args.output).write_text(rendered, encoding="utf-8")
        print(f"Wrote webhook manifests to {args.output}")
    else:
        sys.stdout.write(rendered)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
