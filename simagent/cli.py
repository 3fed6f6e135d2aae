#!/usr/bin/env python3
"""
CLI entry point for simagent.

Every command prints a JSON envelope with --json ({"ok": true, ...} or {"ok": false, "error": ...});
progress lines go to stderr unless --quiet.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from simagent.simulator import actions
from simagent.simulator.config import (
    Settings,
    load_default_target,
    load_elements_and_transform,
    load_settings,
    parse_duration,
    save_default_target,
)
from simagent.simulator.elements import ELEMENT_ORDERS, Element, Transform
from simagent.simulator.errors import SimAgentError, error_envelope, render_error, usage_error, wrap_error_code
from simagent.simulator.flow_runner import load_flow, run_flow
from simagent.simulator.frame import IMAGE_FORMATS, FrameOptions, capture_frame
from simagent.simulator.idb_client import IdbClient, ensure_binary
from simagent.simulator.selectors import SelectorQuery
from simagent.simulator.targets import list_targets, pick_target, resolve_target


def _csv_roles(value: str) -> frozenset[str]:
    return frozenset(part.strip().lower() for part in value.split(",") if part.strip())


def _add_selector_flags(p: argparse.ArgumentParser, *, text: bool = True) -> None:
    p.add_argument("--index", type=int, default=None, help="1-based element index from the last frame.")
    p.add_argument("--id", default="", help="Element id.")
    if text:
        p.add_argument("--label", default="", help="Exact label/value/nearby label (case-insensitive).")
        p.add_argument("--contains", default="", help="Substring of label/value/nearby label/role.")
    p.add_argument("--from", dest="from_path", default="", help="Path to an elements.json (default: last frame).")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="simagent",
        description="Deterministic UI automation for iOS simulators on top of idb and simctl.",
    )
    p.add_argument("--target", default="", help="Simulator UDID or 'booted' (default: saved target, then booted).")
    p.add_argument("--timeout", default="", help="Per-command timeout, e.g. 10s (default SIMAGENT_TIMEOUT or 10s).")
    p.add_argument("--json", action="store_true", help="Print JSON envelopes.")
    p.add_argument("--quiet", action="store_true", help="Suppress progress lines on stderr.")
    sub = p.add_subparsers(dest="command")

    target = sub.add_parser("target", help="List, select or show simulators.")
    target_sub = target.add_subparsers(dest="target_command")
    target_sub.add_parser("list", help="List simulators.")
    target_set = target_sub.add_parser("set", help="Save the default target.")
    target_set.add_argument("spec", help="'booted' or a UDID.")
    target_sub.add_parser("show", help="Show the saved default target.")

    frame = sub.add_parser("frame", help="Capture screenshot + ui tree + elements + transform.")
    frame.add_argument("-o", "--out", default="", help="Output directory (default: timestamped under artifacts).")
    frame.add_argument("--screenshot", action=argparse.BooleanOptionalAction, default=True)
    frame.add_argument("--ui", action=argparse.BooleanOptionalAction, default=True)
    frame.add_argument("--interactive-only", action=argparse.BooleanOptionalAction, default=True)
    frame.add_argument("--stable", action="store_true", help="Require consecutive ui samples to match.")
    frame.add_argument("--stable-samples", type=int, default=3)
    frame.add_argument("--stable-interval", default="250ms")
    frame.add_argument("--order", choices=ELEMENT_ORDERS, default="reading")
    frame.add_argument("--format", dest="image_format", choices=IMAGE_FORMATS, default="png")
    frame.add_argument("--min-area", type=float, default=0.0)
    frame.add_argument("--include-roles", default="", help="Comma-separated roles to keep.")
    frame.add_argument("--exclude-roles", default="", help="Comma-separated roles to drop.")

    ui = sub.add_parser("ui", help="Drive the simulator UI.")
    ui_sub = ui.add_subparsers(dest="ui_command")

    tap = ui_sub.add_parser("tap", help="Tap coordinates or one element.")
    tap.add_argument("coords", nargs="*", help="<x> <y>")
    tap.add_argument("--unit", choices=("pt", "px"), default="pt")
    _add_selector_flags(tap)

    type_ = ui_sub.add_parser("type", help="Type text, optionally into one element.")
    type_.add_argument("words", nargs="*", help="Text to type (joined with spaces).")
    type_.add_argument("--text", default="", help="Text to type (instead of positional words).")
    type_.add_argument("--into", action="store_true", help="Focus the selected element first.")
    _add_selector_flags(type_)
    type_.add_argument("--replace", action="store_true", help="Clear the field before typing (needs --into).")
    type_.add_argument("--ascii", action="store_true", help="Drop characters outside printable ASCII.")
    type_.add_argument("--paste", action="store_true", help="Label the input as pasted.")
    type_.add_argument("--verify", action="store_true", help="Read the text back from the ui tree afterwards.")
    type_.add_argument("--focus-retries", type=int, default=2)

    clear = ui_sub.add_parser("clear", help="Clear a text field.")
    _add_selector_flags(clear)
    clear.add_argument("--max-backspaces", type=int, default=72)

    swipe = ui_sub.add_parser("swipe", help="Swipe from screen center or an element.")
    swipe.add_argument("direction", choices=actions.SWIPE_DIRECTIONS)
    _add_selector_flags(swipe, text=False)
    swipe.add_argument("--distance", type=float, default=actions.DEFAULT_SWIPE_DISTANCE_PT)

    wait = ui_sub.add_parser("wait", help="Poll until text appears and/or enough controls exist.")
    wait.add_argument("--has-text", default="")
    wait.add_argument("--interactive-min", type=int, default=-1)
    wait.add_argument("--timeout", dest="wait_timeout", default="20s")
    wait.add_argument("--interval", default="700ms")

    button = ui_sub.add_parser("button", help="Press a hardware button.")
    button.add_argument("name", help="HOME|LOCK|SIRI|SIDE_BUTTON|APPLE_PAY")

    flow = ui_sub.add_parser("flow", help="Run declarative flows.")
    flow_sub = flow.add_subparsers(dest="flow_command")
    flow_run = flow_sub.add_parser("run", help="Run a flow JSON file.")
    flow_run.add_argument("--file", required=True)
    flow_run.add_argument("--resume-from", type=int, default=1)

    app = sub.add_parser("app", help="App lifecycle via simctl.")
    app_sub = app.add_subparsers(dest="app_command")
    openurl = app_sub.add_parser("openurl")
    openurl.add_argument("url")
    launch = app_sub.add_parser("launch")
    launch.add_argument("--bundle-id", required=True)
    launch.add_argument("--args", dest="launch_args", nargs=argparse.REMAINDER, default=[])
    terminate = app_sub.add_parser("terminate")
    terminate.add_argument("--bundle-id", required=True)
    app_sub.add_parser("list")

    raw = sub.add_parser("raw", help="Pass-through to simctl or idb.")
    raw.add_argument("tool", choices=("simctl", "idb"))
    raw.add_argument("args", nargs=argparse.REMAINDER)
    return p


class _Runner:
    def __init__(self, args: argparse.Namespace, settings: Settings) -> None:
        self.args = args
        self.settings = settings

    def log(self, message: str) -> None:
        if not self.args.quiet:
            print(message, file=sys.stderr)

    def target(self) -> dict[str, Any]:
        t = resolve_target(
            self.args.target,
            config_dir=self.settings.config_dir,
            xcrun_bin=self.settings.xcrun_bin,
            timeout_s=self.settings.timeout_s,
        )
        return t.to_dict()

    def device(self, target: dict[str, Any], *, need_idb: bool = True) -> IdbClient:
        if need_idb:
            ensure_binary(self.settings.idb_bin)
        return IdbClient(
            target["udid"],
            timeout_s=self.settings.timeout_s,
            idb_bin=self.settings.idb_bin,
            xcrun_bin=self.settings.xcrun_bin,
        )

    def cached(
        self, from_path: str, *, required: bool
    ) -> tuple[Optional[list[Element]], Optional[Transform]]:
        try:
            return load_elements_and_transform(self.settings.config_dir, from_path)
        except SimAgentError:
            if required or from_path:
                raise
            return None, None


def _query(args: argparse.Namespace) -> SelectorQuery:
    return SelectorQuery(
        index=args.index,
        id=args.id,
        label=getattr(args, "label", ""),
        contains=getattr(args, "contains", ""),
    )


def _duration(value: str, *, flag: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise usage_error(f"invalid {flag}: {value}") from e


def _cmd_target(r: _Runner) -> dict[str, Any]:
    sub = r.args.target_command
    if sub == "list":
        targets = list_targets(xcrun_bin=r.settings.xcrun_bin, timeout_s=r.settings.timeout_s)
        return {"ok": True, "targets": [t.to_dict() for t in targets]}
    if sub == "set":
        targets = list_targets(xcrun_bin=r.settings.xcrun_bin, timeout_s=r.settings.timeout_s)
        chosen = pick_target(targets, r.args.spec).to_dict()
        chosen.pop("available", None)
        save_default_target(r.settings.config_dir, chosen)
        return {"ok": True, "defaultTarget": chosen}
    if sub == "show":
        saved = load_default_target(r.settings.config_dir)
        if saved is None:
            raise SimAgentError(code="NO_DEFAULT_TARGET", message="no default target set; run `simagent target set`")
        return {"ok": True, "defaultTarget": saved}
    raise usage_error("target subcommand required: list|set|show")


def _cmd_frame(r: _Runner) -> dict[str, Any]:
    a = r.args
    options = FrameOptions(
        out_dir=Path(a.out).expanduser() if a.out else None,
        screenshot=a.screenshot,
        ui=a.ui,
        interactive_only=a.interactive_only,
        stable=a.stable,
        stable_samples=a.stable_samples,
        stable_interval_s=_duration(a.stable_interval, flag="--stable-interval"),
        order=a.order,
        image_format=a.image_format,
        min_area=a.min_area,
        include_roles=_csv_roles(a.include_roles),
        exclude_roles=_csv_roles(a.exclude_roles),
    )
    options.validate()
    target = r.target()
    device = r.device(target, need_idb=options.ui)
    r.log(f"capturing frame from {target['name']} ({target['udid']})")
    return capture_frame(
        device,
        options,
        target=target,
        config_dir=r.settings.config_dir,
        artifacts_dir=r.settings.artifacts_dir,
        log=r.log,
    )


def _cmd_ui_tap(r: _Runner, device: IdbClient) -> dict[str, Any]:
    a = r.args
    query = _query(a)
    if query.count() > 1:
        raise usage_error("choose only one selector: --index|--id|--label|--contains")
    if query.count() == 1:
        cached, _ = r.cached(a.from_path, required=query.index is not None or bool(query.id))
        return actions.tap(device, query=query, cached=cached)

    if len(a.coords) != 2:
        raise usage_error(
            "usage: simagent ui tap <x> <y> [--unit pt|px] | --index <n> | --id <id> | --label <text> | --contains <text>"
        )
    try:
        x, y = float(a.coords[0]), float(a.coords[1])
    except ValueError as e:
        raise usage_error("x and y must be numbers") from e
    transform = None
    if a.unit == "px":
        _, transform = r.cached(a.from_path, required=True)
        if transform is None:
            raise SimAgentError(code="COORD_TRANSFORM_FAILED", message="invalid transform scale")
    return actions.tap(device, x=x, y=y, unit=a.unit, transform=transform)


def _cmd_ui_type(r: _Runner, device: IdbClient, extra: Sequence[str]) -> dict[str, Any]:
    a = r.args
    words = [*a.words, *extra]
    if a.text and words:
        raise usage_error("use either --text or positional text, not both")
    text = a.text or " ".join(words)
    query = _query(a)
    if not a.into and query.count() > 0:
        raise usage_error("selector flags require --into")
    into = query if a.into else None
    cached = None
    if into is not None:
        cached, _ = r.cached(a.from_path, required=into.index is not None or bool(into.id))
    return actions.type_text(
        device,
        text,
        into=into,
        replace=a.replace,
        ascii_mode=a.ascii,
        paste_mode=a.paste,
        verify=a.verify,
        focus_retries=a.focus_retries,
        cached=cached,
    )


def _cmd_ui_clear(r: _Runner, device: IdbClient) -> dict[str, Any]:
    a = r.args
    query = _query(a)
    cached, _ = r.cached(a.from_path, required=query.index is not None or bool(query.id))
    return actions.clear(device, query, max_backspaces=a.max_backspaces, cached=cached)


def _cmd_ui_swipe(r: _Runner, device: IdbClient) -> dict[str, Any]:
    a = r.args
    query = _query(a)
    cached, transform = r.cached(a.from_path, required=query.count() > 0)
    return actions.swipe(
        device,
        a.direction,
        query=query if query.count() > 0 else None,
        distance=a.distance,
        cached=cached,
        transform=transform,
    )


def _cmd_ui_flow(r: _Runner, device: IdbClient) -> dict[str, Any]:
    a = r.args
    if a.flow_command != "run":
        raise usage_error("usage: simagent ui flow run --file <path> [--resume-from <step>]")
    if a.resume_from < 1:
        raise usage_error("--resume-from must be >= 1")
    flow = load_flow(a.file)
    cached, _ = r.cached("", required=False)
    r.log(f"running flow {flow.name or a.file} ({len(flow.steps)} steps, from step {a.resume_from})")
    return run_flow(
        device,
        flow,
        resume_from=a.resume_from,
        cached=cached,
        artifacts_dir=r.settings.artifacts_dir,
        log=r.log,
    )


def _cmd_ui(r: _Runner, extra: Sequence[str]) -> dict[str, Any]:
    a = r.args
    if not a.ui_command:
        raise usage_error("ui subcommand required: tap|type|clear|swipe|wait|button|flow")
    device = r.device(r.target())
    if a.ui_command == "tap":
        return _cmd_ui_tap(r, device)
    if a.ui_command == "type":
        return _cmd_ui_type(r, device, extra)
    if a.ui_command == "clear":
        return _cmd_ui_clear(r, device)
    if a.ui_command == "swipe":
        return _cmd_ui_swipe(r, device)
    if a.ui_command == "wait":
        return actions.wait(
            device,
            has_text=a.has_text,
            interactive_min=a.interactive_min,
            timeout_s=_duration(a.wait_timeout, flag="--timeout"),
            interval_s=_duration(a.interval, flag="--interval"),
        )
    if a.ui_command == "button":
        return actions.press_button(device, a.name)
    return _cmd_ui_flow(r, device)


def _cmd_app(r: _Runner) -> dict[str, Any]:
    a = r.args
    if not a.app_command:
        raise usage_error("app subcommand required: openurl|launch|terminate|list")
    target = r.target()
    device = r.device(target, need_idb=False)
    try:
        if a.app_command == "openurl":
            device.open_url(a.url)
            return {"ok": True, "action": "openurl", "url": a.url}
        if a.app_command == "launch":
            pid_line = device.launch(a.bundle_id, a.launch_args)
            return {"ok": True, "action": "launch", "bundleId": a.bundle_id, "output": pid_line}
        if a.app_command == "terminate":
            device.terminate(a.bundle_id)
            return {"ok": True, "action": "terminate", "bundleId": a.bundle_id}
        return {"ok": True, "action": "list", "output": device.list_apps()}
    except SimAgentError as e:
        raise wrap_error_code(e, "SIMCTL_FAILED", f"app {a.app_command} failed") from e


def _cmd_raw(r: _Runner) -> dict[str, Any]:
    a = r.args
    target = r.target()
    device = r.device(target, need_idb=a.tool == "idb")
    try:
        result = device.idb(*a.args) if a.tool == "idb" else device.simctl(*a.args)
    except SimAgentError as e:
        raise wrap_error_code(e, "RAW_FAILED", f"raw {a.tool} command failed") from e
    return {"ok": True, "stdout": result.stdout, "stderr": result.stderr, "exitCode": result.exit_code}


def _print_human(result: dict[str, Any]) -> None:
    action = result.get("action")
    if "targets" in result:
        for t in result["targets"]:
            print(f"{t['state']:<10} {t['udid']}  {t['name']}  ({t['runtime']})")
    elif "defaultTarget" in result:
        t = result["defaultTarget"]
        print(f"default target: {t.get('name', '')} ({t.get('udid', '')})")
    elif action == "frame":
        print(f"frame created: {result['outDir']}")
        print(f"elements: {result['counts']['all']} ({result['counts']['interactive']} interactive)")
    elif action == "flow-run":
        print(f"flow completed: {len(result['steps'])} steps")
    elif "stdout" in result:
        sys.stdout.write(result["stdout"])
        if result.get("stderr", "").strip():
            sys.stderr.write(result["stderr"])
    elif "output" in result:
        print(result["output"])
    else:
        print(json.dumps(result, indent=2, ensure_ascii=False))


def _fail(err: BaseException, *, as_json: bool) -> int:
    if as_json:
        print(json.dumps(error_envelope(err), indent=2, ensure_ascii=False))
        return 1
    rendered = render_error(err)
    print(f"error [{rendered['code']}]: {rendered['message']}", file=sys.stderr)
    if rendered.get("details"):
        print(json.dumps(rendered["details"], indent=2, ensure_ascii=False), file=sys.stderr)
    return 1


_COMMANDS: dict[str, Callable[[_Runner], dict[str, Any]]] = {
    "target": _cmd_target,
    "frame": _cmd_frame,
    "app": _cmd_app,
    "raw": _cmd_raw,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _parser()
    args, extra = parser.parse_known_args(argv)
    if not args.command:
        parser.print_help(sys.stderr)
        return 2
    # `ui type` words may be interleaved with its flags; argparse leaves the later words over.
    intermixed = args.command == "ui" and args.ui_command == "type"
    if extra and (not intermixed or any(e.startswith("--") for e in extra)):
        parser.error(f"unrecognized arguments: {' '.join(extra)}")

    try:
        settings = load_settings()
        if args.timeout:
            settings = replace(settings, timeout_s=_duration(args.timeout, flag="--timeout"))
        if settings.timeout_s <= 0:
            raise usage_error("--timeout must be > 0")
        runner = _Runner(args, settings)
        if args.command == "ui":
            result = _cmd_ui(runner, extra)
        else:
            result = _COMMANDS[args.command](runner)
    except (SimAgentError, OSError) as e:
        return _fail(e, as_json=args.json)

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        _print_human(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
