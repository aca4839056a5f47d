#!/usr/bin/env python3
"""
Extract a Crossplane composition, its functions and a sample XR from a cluster.

This script reads a Composition from the current kubectl context and writes a
self-contained debug bundle that can be rendered locally with
`crossplane beta render`.

Usage:
    extract-composition <composition-name> [xr-kind] [xr-name] [namespace]

Output (in debug-<composition-name>/):
    composition.yaml  the Composition as stored in the cluster
    functions.yaml    Function packages referenced by the pipeline
    kcl-source.k      inline KCL source, when the pipeline carries one
    xr.yaml           a cleaned composite resource, or a template
"""

import argparse
import copy
import json
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml


COMPOSITION_FILE = "composition.yaml"
FUNCTIONS_FILE = "functions.yaml"
KCL_SOURCE_FILE = "kcl-source.k"
XR_FILE = "xr.yaml"
BUNDLE_FILES = (COMPOSITION_FILE, FUNCTIONS_FILE, KCL_SOURCE_FILE, XR_FILE)

DOCUMENT_SEPARATOR = "---"

KCL_FUNCTION_NAME = "function-kcl"

FUNCTION_API_VERSION = "pkg.crossplane.io/v1beta1"
RUNTIME_ANNOTATION = "render.crossplane.io/runtime"
RUNTIME_DEFAULT = "Default"
RUNTIME_DEVELOPMENT = "Development"

XR_TEMPLATE_NAME = "debug-example"
XR_TEMPLATE_HEADER = "# Template XR - fill in spec values based on your XRD\n"

# Fields assigned by the API server. They make no sense in a desired-state
# render input and are removed from fetched composite resources.
SERVER_FIELDS = (
    ("status",),
    ("metadata", "resourceVersion"),
    ("metadata", "uid"),
    ("metadata", "generation"),
    ("metadata", "creationTimestamp"),
    ("metadata", "managedFields"),
    ("metadata", "finalizers"),
    ("metadata", "ownerReferences"),
)

USAGE_EXAMPLES = """examples:
  extract-composition my-database-composition
  extract-composition my-app-composition XMyApp my-app-instance
  extract-composition my-app-composition XMyApp my-app-instance default
"""


class KubectlError(RuntimeError):
    """A kubectl invocation exited non-zero."""

    def __init__(self, cmd: list[str], stderr: str = ""):
        self.cmd = cmd
        self.stderr = (stderr or "").strip()
        message = f"'{' '.join(cmd)}' failed"
        if self.stderr:
            message += f": {self.stderr.splitlines()[-1]}"
        super().__init__(message)


@dataclass
class KubectlConfig:
    """How to reach the cluster."""

    binary: str = "kubectl"
    context: Optional[str] = None
    kubeconfig: Optional[str] = None


@dataclass
class ExtractOptions:
    composition: str
    xr_kind: str = ""
    xr_name: str = ""
    namespace: str = ""
    output_dir: Optional[Path] = None
    kubectl: KubectlConfig = field(default_factory=KubectlConfig)

    @property
    def bundle_dir(self) -> Path:
        if self.output_dir is not None:
            return Path(self.output_dir)
        return Path(f"debug-{self.composition}")


def check_prerequisites(config: KubectlConfig) -> None:
    """Fail early when the cluster query binary is not installed."""
    if shutil.which(config.binary) is None:
        raise RuntimeError(f"{config.binary} is required but not installed.")


def run_kubectl(args: list[str], config: KubectlConfig) -> str:
    """
    Run kubectl with the given arguments and return its stdout.

    Arguments are passed as a list, never through a shell, so object names
    are never interpreted by anything but kubectl itself.

    Raises:
        KubectlError: If kubectl exits non-zero
        RuntimeError: If the binary cannot be executed
    """
    cmd = [config.binary]
    if config.kubeconfig:
        cmd += ["--kubeconfig", config.kubeconfig]
    if config.context:
        cmd += ["--context", config.context]
    cmd += args

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise KubectlError(cmd, e.stderr)
    except OSError as e:
        raise RuntimeError(f"Could not run {config.binary}: {e}")
    return result.stdout


def get_object(
    kind: str,
    name: str,
    config: KubectlConfig,
    namespace: Optional[str] = None,
    output: str = "json",
) -> str:
    """Get a single object by kind and name, returned as text."""
    args = ["get", kind, name]
    if namespace:
        args += ["-n", namespace]
    args += ["-o", output]
    return run_kubectl(args, config)


def list_objects(kind: str, config: KubectlConfig) -> list[dict[str, Any]]:
    """List every object of a kind across all namespaces."""
    text = run_kubectl(["get", kind, "--all-namespaces", "-o", "json"], config)
    try:
        items = json.loads(text).get("items") or []
    except (ValueError, AttributeError) as e:
        raise RuntimeError(f"Could not parse list of {kind}: {e}")
    return [item for item in items if isinstance(item, dict)]


def dump_document(document: dict[str, Any]) -> str:
    """Serialize a document to YAML, keeping its key order."""
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def strip_server_fields(document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the document without server-assigned fields."""
    cleaned = copy.deepcopy(document)
    for path in SERVER_FIELDS:
        parent = cleaned
        for key in path[:-1]:
            parent = parent.get(key) if isinstance(parent, dict) else None
        if isinstance(parent, dict):
            parent.pop(path[-1], None)
    return cleaned


def _pipeline(composition: dict[str, Any]) -> list[dict[str, Any]]:
    spec = composition.get("spec") or {}
    steps = spec.get("pipeline") or []
    return [step for step in steps if isinstance(step, dict)]


def _step_function(step: dict[str, Any]) -> str:
    ref = step.get("functionRef")
    if not isinstance(ref, dict):
        return ""
    return ref.get("name") or ""


def composite_type(composition: dict[str, Any]) -> tuple[str, str]:
    """Return (apiVersion, kind) of the composite type a Composition targets."""
    ref = (composition.get("spec") or {}).get("compositeTypeRef") or {}
    return ref.get("apiVersion") or "", ref.get("kind") or ""


def pipeline_function_names(composition: dict[str, Any]) -> list[str]:
    """Return the distinct Function names referenced by the pipeline, sorted."""
    names = {_step_function(step) for step in _pipeline(composition)}
    names.discard("")
    return sorted(names)


def inline_kcl_source(
    composition: dict[str, Any], function_name: str = KCL_FUNCTION_NAME
) -> Optional[str]:
    """Return the inline source of the first KCL pipeline step, if any."""
    sources = []
    for step in _pipeline(composition):
        if _step_function(step) != function_name:
            continue
        step_input = step.get("input") or {}
        source = step_input.get("source") if isinstance(step_input, dict) else None
        step_name = step.get("step") or "<unnamed>"
        if source is None or source == "":
            continue
        if not isinstance(source, str):
            print(
                f"  Warning: {function_name} step '{step_name}' has a non-text inline "
                f"source ({type(source).__name__}), skipping it",
                file=sys.stderr,
            )
            continue
        sources.append((step_name, source))

    if not sources:
        return None
    if len(sources) > 1:
        skipped = ", ".join(name for name, _ in sources[1:])
        print(
            f"  Warning: {len(sources)} {function_name} steps carry inline source, "
            f"only the first is extracted (skipped: {skipped})",
            file=sys.stderr,
        )
    return sources[0][1]


@dataclass(frozen=True)
class FoundFunction:
    """A Function fetched from the cluster, kept as kubectl printed it."""

    name: str
    text: str

    def render(self) -> str:
        return self.text if self.text.endswith("\n") else self.text + "\n"


@dataclass(frozen=True)
class PlaceholderFunction:
    """A Function missing from the cluster; render pulls it from the registry."""

    name: str

    def render(self) -> str:
        return dump_document(placeholder_function(self.name))


FunctionResult = Union[FoundFunction, PlaceholderFunction]


def placeholder_function(name: str) -> dict[str, Any]:
    return {
        "apiVersion": FUNCTION_API_VERSION,
        "kind": "Function",
        "metadata": {
            "name": name,
            "annotations": {RUNTIME_ANNOTATION: RUNTIME_DEFAULT},
        },
    }


def fetch_function(name: str, config: KubectlConfig) -> FunctionResult:
    """Fetch a Function by name, substituting a placeholder when it is missing."""
    print(f"  Extracting: {name}")
    try:
        return FoundFunction(name, get_object("function", name, config, output="yaml"))
    except KubectlError:
        print(
            f"  Warning: Function '{name}' not found in cluster, adding placeholder",
            file=sys.stderr,
        )
        return PlaceholderFunction(name)


def write_functions(results: list[FunctionResult], path: Path) -> None:
    """Write Function documents, each followed by a document separator."""
    with open(path, "w") as f:
        for result in results:
            f.write(result.render())
            f.write(DOCUMENT_SEPARATOR + "\n")


class XRStrategy(Enum):
    EXPLICIT = "explicit"
    DISCOVER = "discover"
    TEMPLATE = "template"


def select_xr_strategy(xr_kind: str, xr_name: str, namespace: str = "") -> XRStrategy:
    """Pick how the XR sample is obtained from the arguments given."""
    if xr_kind and xr_name:
        return XRStrategy.EXPLICIT
    if namespace:
        print(
            f"  Warning: namespace '{namespace}' is only used with an XR kind and name, "
            "ignoring it",
            file=sys.stderr,
        )
    if xr_kind or xr_name:
        print(
            "  Warning: XR kind and name must be given together, "
            "looking for an existing XR instead",
            file=sys.stderr,
        )
    return XRStrategy.DISCOVER


def qualified_kind(api_version: str, kind: str) -> str:
    """Qualify a kind with its API group so kubectl cannot pick another group."""
    if "/" in api_version:
        group = api_version.split("/", 1)[0]
        return f"{kind}.{group}"
    return kind


def fetch_xr(
    kind: str, name: str, config: KubectlConfig, namespace: Optional[str] = None
) -> Optional[dict[str, Any]]:
    """Fetch an explicitly named XR, or None when it cannot be read."""
    where = f" in namespace {namespace}" if namespace else ""
    print(f"Extracting XR: {kind}/{name}{where}")
    try:
        text = get_object(kind, name, config, namespace=namespace)
        document = json.loads(text)
    except RuntimeError as e:
        print(f"  Warning: Could not find XR {kind}/{name}: {e}", file=sys.stderr)
        return None
    except ValueError as e:
        print(f"  Warning: Could not parse XR {kind}/{name}: {e}", file=sys.stderr)
        return None
    return document


def discover_xr(
    api_version: str, kind: str, config: KubectlConfig
) -> Optional[dict[str, Any]]:
    """
    Find an existing XR of the composite type.

    When several exist, the one with the lowest (namespace, name) is used so
    repeated runs pick the same object.
    """
    if not kind:
        print(
            "  Warning: Composition declares no composite type, cannot look for an XR",
            file=sys.stderr,
        )
        return None

    print(f"Looking for existing XR of type {kind}...")
    try:
        items = list_objects(qualified_kind(api_version, kind), config)
    except RuntimeError as e:
        print(f"  Warning: Could not list {kind}: {e}", file=sys.stderr)
        return None
    if not items:
        return None

    def sort_key(item):
        metadata = item.get("metadata") or {}
        return (metadata.get("namespace") or "", metadata.get("name") or "")

    chosen = sorted(items, key=sort_key)[0]
    name = (chosen.get("metadata") or {}).get("name")
    if len(items) > 1:
        print(f"  Found {len(items)} XRs, using the first by namespace/name: {name}")
    else:
        print(f"  Found: {name}")
    return chosen


def xr_template(api_version: str, kind: str) -> str:
    """Render a minimal XR whose spec the user has to fill in."""
    document = {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {"name": XR_TEMPLATE_NAME},
        "spec": {},
    }
    return XR_TEMPLATE_HEADER + dump_document(document)


def write_xr(options: ExtractOptions, api_version: str, kind: str, path: Path) -> bool:
    """
    Resolve the XR sample and write it.

    Returns:
        bool: True if xr.yaml was written
    """
    strategy = select_xr_strategy(options.xr_kind, options.xr_name, options.namespace)

    if strategy is XRStrategy.EXPLICIT:
        document = fetch_xr(
            options.xr_kind, options.xr_name, options.kubectl, options.namespace or None
        )
        if document is None:
            return False
    else:
        document = discover_xr(api_version, kind, options.kubectl)
        if document is None:
            strategy = XRStrategy.TEMPLATE

    if strategy is XRStrategy.TEMPLATE:
        print("  No existing XR found. Creating template...")
        with open(path, "w") as f:
            f.write(xr_template(api_version, kind))
        print(f"  -> {XR_FILE} (template - needs spec values)")
        return True

    with open(path, "w") as f:
        f.write(dump_document(strip_server_fields(document)))
    print(f"  -> {XR_FILE}")
    return True


def prepare_output_dir(path: Path) -> None:
    """Create the bundle directory and drop bundle files of a previous run."""
    print(f"Creating debug directory: {path}")
    path.mkdir(parents=True, exist_ok=True)
    for name in BUNDLE_FILES:
        stale = path / name
        if stale.is_file():
            stale.unlink()


def fetch_composition(name: str, config: KubectlConfig) -> tuple[str, dict[str, Any]]:
    """
    Fetch a Composition as YAML text and as a parsed document.

    Raises:
        RuntimeError: If the Composition cannot be fetched or parsed
    """
    try:
        text = get_object("composition", name, config, output="yaml")
    except KubectlError as e:
        raise RuntimeError(f"Composition '{name}' not found ({e})")

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RuntimeError(f"Composition '{name}' is not valid YAML: {e}")
    if not isinstance(document, dict):
        raise RuntimeError(f"Composition '{name}' is not a Kubernetes object")
    return text, document


def validate_bundle(paths: list[Path]) -> list[Path]:
    """Check that every YAML file in the bundle parses; return the broken ones."""
    broken = []
    for path in paths:
        if path.suffix not in (".yaml", ".yml"):
            continue
        try:
            with open(path, "r") as f:
                list(yaml.safe_load_all(f))
        except yaml.YAMLError as e:
            print(f"Warning: {path} is not valid YAML: {e}", file=sys.stderr)
            broken.append(path)
    return broken


def print_summary(
    bundle_dir: Path, written: list[Path], broken: Optional[list[Path]] = None
) -> None:
    broken = broken or []
    print()
    print("Extraction complete!")
    print()
    print(f"Files created in {bundle_dir}/:")
    for path in written:
        note = "  (not valid YAML, see warning above)" if path in broken else ""
        print(f"  {path.name}{note}")
    print()
    print("Directory contents:")
    for entry in sorted(bundle_dir.iterdir()):
        size = entry.stat().st_size if entry.is_file() else 0
        suffix = "/" if entry.is_dir() else ""
        print(f"  {size:>8}  {entry.name}{suffix}")
    print()
    print("To debug locally, run:")
    print(f"  cd {bundle_dir}")
    print(f"  crossplane beta render {XR_FILE} {COMPOSITION_FILE} {FUNCTIONS_FILE}")
    print()
    print("If using local function development:")
    print("  # Terminal 1: Start function")
    print(
        "  docker run --rm -p 9443:9443 "
        f"xpkg.upbound.io/crossplane-contrib/{KCL_FUNCTION_NAME}:latest --insecure --debug"
    )
    print()
    print(
        f"  # Terminal 2: Render (after setting {RUNTIME_ANNOTATION}: "
        f"{RUNTIME_DEVELOPMENT} in {FUNCTIONS_FILE})"
    )
    print(f"  crossplane beta render {XR_FILE} {COMPOSITION_FILE} {FUNCTIONS_FILE}")


def extract(options: ExtractOptions) -> list[Path]:
    """
    Extract a debug bundle for a Composition.

    Args:
        options: What to extract and where to write it

    Returns:
        list of Path objects for the files written

    Raises:
        RuntimeError: If kubectl is missing or the Composition cannot be fetched
    """
    config = options.kubectl
    check_prerequisites(config)

    bundle_dir = options.bundle_dir
    prepare_output_dir(bundle_dir)
    written = []

    print(f"Extracting composition: {options.composition}")
    text, composition = fetch_composition(options.composition, config)
    composition_path = bundle_dir / COMPOSITION_FILE
    with open(composition_path, "w") as f:
        f.write(text)
    written.append(composition_path)
    print(f"  -> {COMPOSITION_FILE}")

    api_version, kind = composite_type(composition)
    print(f"  Composite type: {kind} ({api_version})")

    print("Extracting function definitions...")
    function_names = pipeline_function_names(composition)
    if function_names:
        print(f"  Functions found: {' '.join(function_names)}")
        results = [fetch_function(name, config) for name in function_names]
        functions_path = bundle_dir / FUNCTIONS_FILE
        write_functions(results, functions_path)
        written.append(functions_path)
        print(f"  -> {FUNCTIONS_FILE}")
    else:
        print("  No functions found in pipeline")

    print("Checking for inline KCL...")
    source = inline_kcl_source(composition)
    if source is not None:
        source_path = bundle_dir / KCL_SOURCE_FILE
        with open(source_path, "w") as f:
            f.write(source)
        written.append(source_path)
        print(f"  -> {KCL_SOURCE_FILE} (inline KCL extracted)")

    xr_path = bundle_dir / XR_FILE
    if write_xr(options, api_version, kind, xr_path):
        written.append(xr_path)

    broken = validate_bundle(written)
    print_summary(bundle_dir, written, broken)
    return written


def _check_name(parser: argparse.ArgumentParser, label: str, value: str) -> None:
    if value.startswith("-") or "/" in value or any(c.isspace() for c in value):
        parser.error(f"invalid {label}: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="extract-composition",
        description=(
            "Extract a Crossplane composition, its functions and a sample XR "
            "for local debugging with `crossplane beta render`"
        ),
        epilog=USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("composition", help="Name of the Composition to extract")
    parser.add_argument("xr_kind", nargs="?", default="", help="Kind of the XR to extract")
    parser.add_argument("xr_name", nargs="?", default="", help="Name of the XR to extract")
    parser.add_argument("namespace", nargs="?", default="", help="Namespace of the XR")
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output folder for the bundle (default: debug-<composition>)",
    )
    parser.add_argument("--context", default=None, help="kubectl context to use")
    parser.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig file")
    parser.add_argument(
        "--kubectl",
        default=os.environ.get("KUBECTL", "kubectl"),
        help="kubectl binary to run (default: $KUBECTL or kubectl)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.composition:
        parser.error("composition name must not be empty")
    _check_name(parser, "composition name", args.composition)
    for label, value in (
        ("XR kind", args.xr_kind),
        ("XR name", args.xr_name),
        ("namespace", args.namespace),
    ):
        if value:
            _check_name(parser, label, value)

    options = ExtractOptions(
        composition=args.composition,
        xr_kind=args.xr_kind,
        xr_name=args.xr_name,
        namespace=args.namespace,
        output_dir=Path(args.output) if args.output else None,
        kubectl=KubectlConfig(
            binary=args.kubectl, context=args.context, kubeconfig=args.kubeconfig
        ),
    )

    try:
        extract(options)
    except KeyboardInterrupt:
        print("\n\nExtraction cancelled.", file=sys.stderr)
        sys.exit(130)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
