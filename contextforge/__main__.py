"""CLI entry point: python -m contextforge prompt "Your question" --company-id ACME --agent-id a1.

Also: python -m contextforge cleanup-cache (purge the query expansion cache).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure repo root is on path so "src" can be imported when running from repo root
_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from src.config import ContextInjectionConfig, get_settings
from src.exceptions import ConfigurationError, ContextForgeError
from src.expansion import purge_cache
from src.logging_config import configure_logging
from src.models import AgentIdentity
from src.pipeline import build_expansion_cache, build_pipeline


def _run_prompt(args: argparse.Namespace, question: str) -> int:
    config = ContextInjectionConfig.from_dict(
        {
            "enable_query_expansion": not args.no_expansion,
            "enable_reranking": not args.no_rerank,
            "rerank_strategy": args.rerank_strategy,
            "include_citations": not args.no_citations,
        }
    )
    agent = AgentIdentity(
        id=args.agent_id,
        name=args.agent_name,
        role=args.agent_role,
        description=args.agent_description,
    )
    pipeline = build_pipeline(get_settings())
    result = pipeline.run(agent, args.company_id, question, config)

    print(result.system_prompt)
    if args.footer and result.citation_footer:
        print(result.citation_footer)
    if result.tier_errors:
        print("\n--- Tier errors ---", file=sys.stderr)
        for tier, error in result.tier_errors.items():
            print(f"  {tier}: {error}", file=sys.stderr)
    print(
        f"\n[{result.chunks_used}/{result.chunks_retrieved} chunks, "
        f"confidence {result.context_confidence:.0%}, {result.total_time_ms:.0f}ms]",
        file=sys.stderr,
    )
    return 0


def _run_cleanup_cache() -> int:
    cache = build_expansion_cache(get_settings())
    expired, stale = purge_cache(cache)
    print(f"Removed {expired} expired and {stale} stale expansion cache entries.")
    return 0


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="contextforge",
        description="Build a context-grounded system prompt. Use: python -m contextforge prompt \"Your question\" --company-id ID --agent-id ID",
    )
    parser.add_argument(
        "--log-level",
        default=settings.contextforge_log_level,
        help=f"Logging level (default: {settings.contextforge_log_level})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command")

    prompt_parser = subparsers.add_parser("prompt", help="Print the system prompt built for a question")
    prompt_parser.add_argument(
        "question",
        type=str,
        nargs="+",
        help="Question (words are joined if passed separately)",
    )
    prompt_parser.add_argument("--company-id", required=True, help="Company whose knowledge is searched")
    prompt_parser.add_argument("--agent-id", required=True, help="Agent whose documents are searched")
    prompt_parser.add_argument("--agent-name", default="", help="Agent display name")
    prompt_parser.add_argument("--agent-role", default="", help="Agent role")
    prompt_parser.add_argument("--agent-description", default="", help="One-line agent description")
    prompt_parser.add_argument(
        "--rerank-strategy",
        choices=["service", "cross_encoder", "bm25"],
        default="service",
        help="Reranker to use (default: service)",
    )
    prompt_parser.add_argument("--no-expansion", action="store_true", help="Skip query expansion")
    prompt_parser.add_argument("--no-rerank", action="store_true", help="Skip reranking")
    prompt_parser.add_argument("--no-citations", action="store_true", help="Omit [n] citation markers")
    prompt_parser.add_argument("--footer", action="store_true", help="Also print the citation footer")

    subparsers.add_parser(
        "cleanup-cache",
        help="Purge expired and long-unused query expansion cache entries (run from cron)",
    )

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    if args.command == "prompt":
        question = " ".join(args.question).strip()
        if not question:
            print("Error: question must be non-empty.", file=sys.stderr)
            return 1
        try:
            return _run_prompt(args, question)
        except ConfigurationError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            if e.details:
                print(e.details, file=sys.stderr)
            return 1
        except ContextForgeError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
    if args.command == "cleanup-cache":
        try:
            return _run_cleanup_cache()
        except ContextForgeError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
