"""CLI entry point for the pharmacy analytics core.

Usage:
    # Sell-out by universe over Q1 for one pharmacy
    python -m pharma_analytics segments --dataset data.json \\
        --start 2024-01-01 --end 2024-03-31 --dimension universe --pharmacy ph-1

    # Monthly stock evolution with ruptures
    python -m pharma_analytics evolution --start 2024-01-01 --end 2024-06-30 \\
        --metric stock --interval month

    # Compare Q1 with Q4 of the previous year
    python -m pharma_analytics compare --start 2024-01-01 --end 2024-03-31 \\
        --compare-start 2023-10-01 --compare-end 2023-12-31 --dimension category

    # One pharmacy against the network average
    python -m pharma_analytics compare --start 2024-01-01 --end 2024-03-31 \\
        --compare-start 2023-10-01 --compare-end 2023-12-31 --by group --pharmacy ph-1

    # Price positioning, margins and inventory reports
    python -m pharma_analytics prices --end 2024-03-31 --pharmacy ph-1
    python -m pharma_analytics margins --start 2024-01-01 --end 2024-03-31
    python -m pharma_analytics valuation --end 2024-03-31
    python -m pharma_analytics stock-months --end 2024-03-31

Without ``--dataset`` the data source comes from settings (PHARMA_* env).
Results are printed as JSON. Exit code 2 on invalid arguments, 1 when the
data source fails.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from pydantic import BaseModel

from .config import get_settings
from .data_source import DataSource, InMemoryDataSource, create_data_source
from .errors import DataSourceUnavailable, InvalidArgument
from .filters import AnalyticsQuery, build_query

logger = logging.getLogger("pharma_analytics.cli")


def _source(args: argparse.Namespace) -> DataSource:
    if args.dataset:
        return InMemoryDataSource.from_json(args.dataset)
    return create_data_source(get_settings())


def _query(args: argparse.Namespace) -> AnalyticsQuery:
    # Point-in-time reports only need an end date
    start = args.start if args.start is not None else args.end
    return build_query(
        start,
        args.end,
        pharmacy_ids=args.pharmacy,
        product_codes=args.code,
    )


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, list):
        return [_jsonable(r) for r in result]
    return result


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_segments(args: argparse.Namespace) -> Any:
    from .segments import aggregate_segments

    return await aggregate_segments(
        _source(args),
        _query(args),
        args.dimension,
        args.metric,
        uncategorized=get_settings().uncategorized_label,
    )


async def _cmd_evolution(args: argparse.Namespace) -> Any:
    from .evolution import evolution

    return await evolution(_source(args), _query(args), args.metric, args.interval)


async def _cmd_compare(args: argparse.Namespace) -> Any:
    from .comparison import (
        compare_evolution,
        compare_products,
        compare_segments,
        compare_to_group,
    )

    query = _query(args)
    if args.by == "segments":
        return await compare_segments(
            _source(args),
            query,
            args.compare_start,
            args.compare_end,
            args.dimension,
            args.metric,
        )
    if args.by == "evolution":
        return await compare_evolution(
            _source(args),
            query,
            args.compare_start,
            args.compare_end,
            args.metric,
            args.interval,
        )
    if args.by == "group":
        return await compare_to_group(
            _source(args), query, args.compare_start, args.compare_end
        )
    return await compare_products(
        _source(args), query, args.compare_start, args.compare_end
    )


async def _cmd_prices(args: argparse.Namespace) -> Any:
    from .pricing import price_positioning

    return await price_positioning(
        _source(args), _query(args), aggregate_by_code=args.by_code
    )


async def _cmd_margins(args: argparse.Namespace) -> Any:
    from .margins import product_margins, summarize_margins

    margins = await product_margins(_source(args), _query(args))
    return {
        "summary": _jsonable(summarize_margins(margins)),
        "products": _jsonable(margins),
    }


async def _cmd_valuation(args: argparse.Namespace) -> Any:
    from .inventory import valuation

    return await valuation(_source(args), _query(args))


async def _cmd_stock_months(args: argparse.Namespace) -> Any:
    from .inventory import stock_months

    settings = get_settings()
    return await stock_months(
        _source(args),
        _query(args),
        lookback_months=args.lookback or settings.stock_months_lookback,
        overstock_months=settings.overstock_months,
        aggregate_by_code=args.by_code,
    )


_COMMANDS = {
    "segments": _cmd_segments,
    "evolution": _cmd_evolution,
    "compare": _cmd_compare,
    "prices": _cmd_prices,
    "margins": _cmd_margins,
    "valuation": _cmd_valuation,
    "stock-months": _cmd_stock_months,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_common(parser: argparse.ArgumentParser, *, needs_start: bool = True) -> None:
    parser.add_argument("--dataset", help="JSON dataset for the in-memory source")
    parser.add_argument(
        "--start",
        required=needs_start,
        help="Range start, YYYY-MM-DD" + ("" if needs_start else " (default: --end)"),
    )
    parser.add_argument("--end", required=True, help="Range end, YYYY-MM-DD")
    parser.add_argument(
        "--pharmacy",
        action="append",
        help="Restrict to a pharmacy id (repeatable)",
    )
    parser.add_argument(
        "--code",
        action="append",
        help="Restrict to an EAN13 product code (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pharma_analytics",
        description="Sell-out, stock and sell-in analytics for pharmacy networks",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # segments
    seg = subparsers.add_parser("segments", help="Aggregate a metric by segment")
    _add_common(seg)
    seg.add_argument("--dimension", required=True, help="Taxonomy dimension")
    seg.add_argument("--metric", default="sales", help="sales, stock or sell_in")

    # evolution
    evo = subparsers.add_parser("evolution", help="Time series with ruptures")
    _add_common(evo)
    evo.add_argument("--metric", default="sales", help="sales, stock or sell_in")
    evo.add_argument("--interval", default="day", help="day, week or month")

    # compare
    cmp_parser = subparsers.add_parser("compare", help="Compare two periods")
    _add_common(cmp_parser)
    cmp_parser.add_argument("--compare-start", required=True)
    cmp_parser.add_argument("--compare-end", required=True)
    cmp_parser.add_argument(
        "--by",
        choices=["segments", "evolution", "products", "group"],
        default="segments",
        help="What to compare (default: segments)",
    )
    cmp_parser.add_argument("--dimension", default="universe")
    cmp_parser.add_argument("--metric", default="sales")
    cmp_parser.add_argument("--interval", default="day")

    # prices
    prices = subparsers.add_parser("prices", help="Price positioning")
    _add_common(prices, needs_start=False)
    prices.add_argument(
        "--by-code",
        action="store_true",
        help="One row per EAN13 instead of per product instance",
    )

    # margins
    margins = subparsers.add_parser("margins", help="Product margin panel")
    _add_common(margins)

    # valuation
    val = subparsers.add_parser("valuation", help="Inventory value at --end")
    _add_common(val, needs_start=False)

    # stock-months
    sm = subparsers.add_parser("stock-months", help="Months of stock coverage")
    _add_common(sm, needs_start=False)
    sm.add_argument("--lookback", type=int, help="Months of sales averaged")
    sm.add_argument("--by-code", action="store_true", help="Aggregate per EAN13")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    command = _COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        result = asyncio.run(command(args))
    except InvalidArgument as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except DataSourceUnavailable as exc:
        logger.error("Data source failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(_jsonable(result), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
