#!/usr/bin/env python3
"""
clusterkit CLI

Command-line interface for running the clustering engine on JSON files.

Usage:
    python cli.py hierarchical data.json --linkage ward --num-clusters 3
    python cli.py hierarchical data.json --method divisive --num-clusters 4
    python cli.py hierarchical data.json --cut-height 2.5
    python cli.py dbscan data.json --eps 0.5 --min-pts 4
    python cli.py dbscan data.json --predict new_points.json
    python cli.py evaluate data.json labels.json [--true-labels truth.json]

Input files hold a JSON list of numeric rows or of records (objects whose
numeric fields are the features). Results are printed as JSON; add
--summary for a short human-readable overview instead.
"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from clusterkit.config.settings_loader import ConfigManager, get_settings
from clusterkit.core import (
    CancellationToken,
    cut_dendrogram,
    dbscan_cluster,
    evaluate_quality,
    hierarchical_cluster,
)
from clusterkit.utils.advanced_logging import configure_logging
from clusterkit.utils.error_handling import ClusterKitError, InputValidationError


def load_json(path: str) -> Any:
    """
    Read a JSON document.

    Raises:
        InputValidationError: If the file is missing or not valid JSON
    """
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise InputValidationError(f"File not found: {path}", details={"path": path}) from e
    except json.JSONDecodeError as e:
        raise InputValidationError(f"Invalid JSON in {path}: {e}", details={"path": path}) from e


def print_json(data: dict, indent: int = 2):
    """Pretty print JSON."""
    print(json.dumps(data, indent=indent, default=str))


def print_clustering(result: Dict[str, Any]):
    """Print clustering overview."""
    print(f"📊 {result.get('algorithm', 'clustering').title()} Result\n")
    print(f"Points: {result.get('total_items', 0)}")
    print(f"Clusters: {result.get('n_clusters', 0)}")
    print(f"Noise: {result.get('outlier_count', 0)}")

    metrics = result.get("quality_metrics") or {}
    if metrics:
        print("\nQuality Metrics:")
        for name, value in metrics.items():
            print(f"  {name}: {value:.4f}")


def print_report(report: Dict[str, Any]):
    """Print quality report overview."""
    summary = report["summary"]
    print("🧪 Quality Report\n")
    print(f"Points: {report['num_points']} ({report['num_noise_points']} noise)")
    print(f"Clusters: {report['num_clusters']}")
    print(f"Overall Score: {summary['overall_score']:.3f}")
    print(f"Recommendation: {summary['recommendation'].upper()}")


def _params(args: argparse.Namespace, names: List[str]) -> Dict[str, Any]:
    """Collect the options that were given on the command line."""
    params = {}
    for name in names:
        value = getattr(args, name, None)
        if value is not None:
            params[name] = value
    return params


def _token(args: argparse.Namespace) -> Optional[CancellationToken]:
    if args.time_budget is None:
        return None
    return CancellationToken(time_budget_seconds=args.time_budget)


def run_hierarchical(args: argparse.Namespace) -> Dict[str, Any]:
    params = _params(args, ["method", "linkage", "distance_metric", "num_clusters", "distance_threshold"])
    if args.weights:
        params["feature_weights"] = args.weights

    result = hierarchical_cluster(load_json(args.data), params, cancellation_token=_token(args))
    if result.is_cancelled:
        return result.to_dict()

    output = result.to_dict()
    if not args.dendrogram:
        output.pop("dendrogram", None)
    if args.cut_height is not None:
        output["cut_labels"] = cut_dendrogram(result, height=args.cut_height).tolist()
    return output


def run_dbscan(args: argparse.Namespace) -> Dict[str, Any]:
    params = _params(args, ["eps", "min_pts", "distance_metric"])
    if args.weights:
        params["feature_weights"] = args.weights
    if args.normalize:
        params["normalize"] = True

    result = dbscan_cluster(load_json(args.data), params, cancellation_token=_token(args))
    if result.is_cancelled:
        return result.to_dict()

    output = result.to_dict()
    if args.predict:
        output["predicted_labels"] = result.predict(load_json(args.predict)).tolist()
    return output


def run_evaluate(args: argparse.Namespace) -> Dict[str, Any]:
    true_labels = load_json(args.true_labels) if args.true_labels else None
    options = _params(args, ["distance_metric"])
    report = evaluate_quality(load_json(args.data), load_json(args.labels), true_labels, options)
    return report.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="clusterkit clustering CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to settings YAML")
    parser.add_argument("--log-level", help="Override logging level")
    parser.add_argument("--summary", action="store_true", help="Print a short overview instead of JSON")
    parser.add_argument("--time-budget", type=float, help="Cancel after this many seconds")

    commands = parser.add_subparsers(dest="command", required=True)

    hierarchical = commands.add_parser("hierarchical", help="Hierarchical clustering")
    hierarchical.add_argument("data", help="JSON file with points")
    hierarchical.add_argument("--method", choices=["agglomerative", "divisive"])
    hierarchical.add_argument("--linkage", choices=["single", "complete", "average", "ward", "centroid"])
    hierarchical.add_argument("--distance-metric", choices=["euclidean", "manhattan", "cosine", "chebyshev"])
    hierarchical.add_argument("--num-clusters", type=int, help="Target cluster count")
    hierarchical.add_argument("--distance-threshold", type=float, help="Stop before merges above this distance")
    hierarchical.add_argument("--weights", type=float, nargs="+", help="Per-feature weights")
    hierarchical.add_argument("--cut-height", type=float, help="Also cut the dendrogram at this height")
    hierarchical.add_argument("--dendrogram", action="store_true", help="Include the dendrogram in the output")

    dbscan = commands.add_parser("dbscan", help="DBSCAN clustering")
    dbscan.add_argument("data", help="JSON file with points")
    dbscan.add_argument("--eps", type=float, help="Neighbourhood radius (estimated if omitted)")
    dbscan.add_argument("--min-pts", type=int, help="Core point threshold (estimated if omitted)")
    dbscan.add_argument("--distance-metric", choices=["euclidean", "manhattan", "cosine", "chebyshev"])
    dbscan.add_argument("--weights", type=float, nargs="+", help="Per-feature weights")
    dbscan.add_argument("--normalize", action="store_true", help="Z-score features first")
    dbscan.add_argument("--predict", help="JSON file with new points to label")

    evaluate = commands.add_parser("evaluate", help="Quality report for given labels")
    evaluate.add_argument("data", help="JSON file with points")
    evaluate.add_argument("labels", help="JSON file with cluster labels")
    evaluate.add_argument("--true-labels", help="JSON file with ground-truth labels")
    evaluate.add_argument("--distance-metric", choices=["euclidean", "manhattan", "cosine", "chebyshev"])

    return parser


COMMANDS = {
    "hierarchical": run_hierarchical,
    "dbscan": run_dbscan,
    "evaluate": run_evaluate,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.config:
            ConfigManager().load_config(args.config)
        settings = get_settings()
        configure_logging(
            log_level=args.log_level or settings.logging.level,
            log_format=settings.logging.format,
            log_file=settings.logging.file,
            service_name=settings.service.name,
        )

        output = COMMANDS[args.command](args)
    except ClusterKitError as e:
        print(f"❌ {e.message}", file=sys.stderr)
        print_json(e.to_dict())
        return 1

    if output.get("cancelled"):
        print(f"🚫 Cancelled: {output['reason']}", file=sys.stderr)
        print_json(output)
        return 2

    if args.summary:
        if args.command == "evaluate":
            print_report(output)
        else:
            print_clustering(output)
    else:
        print_json(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
