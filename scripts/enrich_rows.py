#!/usr/bin/env python3
"""
Enrich a JSON file of contact rows from the command line.

The input is either a list of row objects or
`{"rows": [...], "headers": [...], "detectedFields": {...}}`. CSV parsing is
left to the caller.

By default the full agent conversation runs, exactly as POST /enrich does.
With --direct the LLM is skipped: the reconciler resolves every identifier and
fetches every profile itself.

Usage:
    python scripts/enrich_rows.py contacts.json
    python scripts/enrich_rows.py contacts.json --direct --output enriched.json
    python scripts/enrich_rows.py contacts.json --message "Enrich these and summarize the audience"
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import json
import logging

from api.routes.enrich import ChatMessage, EnrichRequest, UploadedData, run_enrichment
from api.services.export_fetcher import ExportFetcher
from api.services.icp_analyzer import analyze_icp
from api.services.identity_reconciler import IdentityReconciler
from api.services.llm_providers import build_provider
from api.services.resilience import RateLimitedCaller, RateLimitPolicy
from api.services.tool_gateway import ToolGateway, ToolServiceConnection
from config.settings import settings

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Resolve all identifiers and enrich my CSV with full profiles."


def load_upload(path: Path) -> UploadedData:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        return UploadedData(rows=data)
    return UploadedData.model_validate(data)


async def enrich_direct(gateway: ToolGateway, upload: UploadedData) -> dict:
    """Reconcile with an empty tool-call log: every row goes through auto-resolve and gap-fill."""
    reconciler = IdentityReconciler(
        gateway,
        ExportFetcher(timeout=settings.export_timeout_seconds),
        batch_size=settings.batch_size,
    )
    tool_calls: list[dict] = []
    result = await reconciler.reconcile(tool_calls, upload.rows, upload.resolved_fields())
    return {
        "enrichedData": result.enriched_rows,
        "exportLinks": result.export_links,
        "resolvedCount": result.resolved_count,
        "enrichedCount": result.enriched_count,
        "icpAnalysis": analyze_icp(result.enriched_rows).model_dump(by_alias=True),
        "warnings": result.warnings,
        "toolCalls": len(tool_calls),
    }


async def enrich_with_agent(gateway: ToolGateway, upload: UploadedData, message: str) -> dict:
    provider = build_provider(settings)
    caller = RateLimitedCaller(
        is_rate_limit=provider.is_rate_limit,
        retry_hint=provider.retry_hint,
        policy=RateLimitPolicy(
            max_attempts=settings.llm_max_attempts,
            max_delay=settings.llm_max_backoff_seconds,
            min_interval=settings.min_call_interval_seconds,
        ),
    )
    request = EnrichRequest(
        messages=[ChatMessage(role="user", content=message)],
        uploaded_data=upload,
    )
    response = await run_enrichment(
        request,
        gateway,
        provider,
        caller,
        ExportFetcher(timeout=settings.export_timeout_seconds),
        settings,
    )
    return response.model_dump(by_alias=True)


async def main_async(args) -> int:
    upload = load_upload(Path(args.input))
    logger.info(f"Loaded {len(upload.rows)} rows from {args.input}")

    connection = ToolServiceConnection.from_settings(settings)
    try:
        async with connection.lease():
            gateway = ToolGateway(connection)
            if args.direct:
                output = await enrich_direct(gateway, upload)
            else:
                output = await enrich_with_agent(gateway, upload, args.message)
    finally:
        await connection.aclose()

    text = json.dumps(output, indent=2, default=str)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info(f"Wrote {output.get('enrichedCount', 0)} enriched rows to {args.output}")
    else:
        print(text)
    return 0


def main():
    parser = argparse.ArgumentParser(description='Enrich a JSON file of contact rows')
    parser.add_argument('input', type=str, help='Path to JSON rows file')
    parser.add_argument('--output', type=str, help='Write the result here instead of stdout')
    parser.add_argument('--direct', action='store_true', help='Skip the LLM; reconcile directly')
    parser.add_argument('--message', type=str, default=DEFAULT_MESSAGE, help='User message for the agent')
    args = parser.parse_args()

    sys.exit(asyncio.run(main_async(args)))


if __name__ == '__main__':
    main()
