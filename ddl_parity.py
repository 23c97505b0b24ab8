# Copyright 2025 Minorli
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Compare object DDL between two Oracle environments.

Usage:
    ddl-parity [config.ini] [--objects objects.csv] [--owner HR,SCOTT] [--types TABLE,VIEW]
               [--fetch-ddl] [--diff] [--csv out.csv] [--json out.json] [--patch]
    ddl-parity [config.ini] --test-connection

Behavior:
    * Reads [SOURCE] / [TARGET] connection info and [SETTINGS] from config.ini.
    * Objects come from --objects (or settings.object_list); without a list, every
      object of the configured owners/types found in either environment is compared.
    * Each object's DDL is fetched from both sides via DBMS_METADATA, normalized and
      classified as MATCH / DIFF / MISSING_IN_SOURCE / MISSING_IN_TARGET / MISSING_IN_BOTH.
    * Prints a rich report (also saved under report_dir), optionally writes CSV / JSON
      results and patch scripts for the differing objects.

Exit code: 0 all MATCH, 1 differences found, 2 configuration / connection error.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import oracledb
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

import ddl_patch
from ddl_validator import (
    CONFIG_DEFAULT_PATH,
    STATUS_DIFF,
    STATUS_MATCH,
    STATUS_MISSING_IN_BOTH,
    STATUS_MISSING_IN_SOURCE,
    STATUS_MISSING_IN_TARGET,
    STATUS_ORDER,
    ConfigError,
    OracleDdlSource,
    ValidationResult,
    collect_object_identities,
    init_oracle_client,
    load_config,
    load_object_list,
    open_connection,
    parse_bool,
    parse_csv_list,
    setup_metadata_session,
    summarize_results,
    test_connection,
    validate_objects,
    write_results_csv,
    write_results_json,
)
from ddl_normalizer import normalize_object_type

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DIFFERENCES = 1
EXIT_ERROR = 2

# --- 日志配置 ---
LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
LOG_SECTION_WIDTH = 80

STATUS_STYLES: Dict[str, str] = {
    STATUS_MATCH: "ok",
    STATUS_DIFF: "mismatch",
    STATUS_MISSING_IN_TARGET: "missing",
    STATUS_MISSING_IN_SOURCE: "missing",
    STATUS_MISSING_IN_BOTH: "info",
}

STATUS_LABELS: Dict[str, str] = {
    STATUS_MATCH: "一致",
    STATUS_DIFF: "DDL 不一致",
    STATUS_MISSING_IN_TARGET: "目标端缺失",
    STATUS_MISSING_IN_SOURCE: "源端缺失",
    STATUS_MISSING_IN_BOTH: "两端均不存在",
}


def _build_console_handler(level: int) -> logging.Handler:
    handler = RichHandler(
        level=level,
        show_time=True,
        omit_repeated_times=False,
        show_level=True,
        show_path=False,
        rich_tracebacks=False,
        log_time_format=LOG_TIME_FORMAT
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def init_console_logging(level: int = logging.INFO) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            continue
        root_logger.removeHandler(handler)
    root_logger.addHandler(_build_console_handler(level))


def set_console_log_level(root_logger: logging.Logger, level: int) -> None:
    for handler in root_logger.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setLevel(level)


def log_section(title: str, fill_char: str = "=") -> None:
    clean = f" {title.strip()} "
    if len(clean) >= LOG_SECTION_WIDTH:
        log.info("%s", title.strip())
        return
    log.info("%s", clean.center(LOG_SECTION_WIDTH, fill_char))


def setup_run_logging(settings: Dict, timestamp: str) -> Optional[Path]:
    """
    为每次运行创建日志文件：
      - 日志目录默认 logs，可在 [SETTINGS]->log_dir 覆盖
      - 控制台默认 INFO（可用 log_level 覆盖）
      - 文件记录 DEBUG 及以上
    """
    try:
        log_dir = Path((settings.get("log_dir") or "logs").strip() or "logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"ddl_parity_{timestamp}.log"

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT, datefmt=LOG_TIME_FORMAT))
        root_logger.addHandler(file_handler)

        level_name = (settings.get("log_level") or "INFO").strip().upper()
        console_level = getattr(logging, level_name, logging.INFO)
        set_console_log_level(root_logger, console_level)

        log.info("本次运行日志将输出到: %s", log_file.resolve())
        return log_file
    except OSError as exc:
        log.warning("初始化日志文件失败，将仅输出到控制台: %s", exc)
        return None


# ====================== 报告输出 (Rich) ======================

def print_validation_report(
    results: Sequence[ValidationResult],
    source_label: str,
    target_label: str,
    report_file: Optional[Path] = None,
    console: Optional[Console] = None
) -> Dict[str, int]:
    custom_theme = Theme({
        "ok": "green",
        "missing": "red",
        "mismatch": "yellow",
        "info": "cyan",
        "header": "bold magenta",
        "title": "bold white on blue"
    })
    if console is None:
        console = Console(theme=custom_theme, record=report_file is not None)
    else:
        console.push_theme(custom_theme)

    counts = summarize_results(results)

    console.print(Panel.fit(f"[bold]DDL 一致性校验报告: {source_label} -> {target_label}[/bold]", style="title"))

    summary_table = Table(title="[header]综合概要", show_header=True, header_style="bold")
    summary_table.add_column("状态", no_wrap=True)
    summary_table.add_column("说明")
    summary_table.add_column("数量", justify="right")
    for status in STATUS_ORDER:
        style = STATUS_STYLES.get(status, "info")
        summary_table.add_row(
            Text(status, style=style),
            STATUS_LABELS.get(status, ""),
            str(counts.get(status, 0))
        )
    summary_table.add_row("[bold]TOTAL[/bold]", "校验对象总数", f"[bold]{len(results)}[/bold]")
    console.print(summary_table)

    problems = [(idx, r) for idx, r in enumerate(results, start=1) if r.status != STATUS_MATCH]
    if problems:
        detail_table = Table(title="[header]差异明细", show_lines=False)
        detail_table.add_column("#", justify="right", no_wrap=True)
        detail_table.add_column("OWNER", no_wrap=True)
        detail_table.add_column("TYPE", no_wrap=True)
        detail_table.add_column("NAME")
        detail_table.add_column("STATUS", no_wrap=True)
        detail_table.add_column("MESSAGE")
        for idx, r in problems:
            detail_table.add_row(
                str(idx),
                r.item.owner,
                r.item.object_type,
                r.item.name,
                Text(r.status, style=STATUS_STYLES.get(r.status, "info")),
                r.message or "-"
            )
        console.print(detail_table)
    else:
        console.print("[ok]所有对象的 DDL 均一致。")

    for r in results:
        if r.diff:
            console.print(Panel(
                Text(r.diff),
                title=f"[mismatch]{r.item}",
                border_style="mismatch",
                expand=False
            ))

    console.print(Panel.fit("[bold]报告结束[/bold]", style="title"))

    if report_file:
        report_path = Path(report_file)
        try:
            report_path.parent.mkdir(parents=True, exist_ok=True)
            report_text = console.export_text(clear=False)
            report_path.write_text(report_text, encoding='utf-8')
            console.print(f"[info]报告已保存: {report_path}")
        except OSError as exc:
            console.print(f"[missing]报告写入失败: {exc}")

    return counts


# ====================== 主函数 ======================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare object DDL between two Oracle environments.")
    parser.add_argument(
        "config",
        nargs="?",
        default=CONFIG_DEFAULT_PATH,
        help="config.ini path (default: config.ini)",
    )
    parser.add_argument(
        "--objects",
        help="CSV file with OWNER,NAME,TYPE rows (overrides [SETTINGS] object_list).",
    )
    parser.add_argument(
        "--owner",
        action="append",
        help="Compare every object of these owners (comma-separated, repeatable).",
    )
    parser.add_argument(
        "--types",
        action="append",
        help="Object types used with --owner (e.g. TABLE,VIEW,PACKAGE BODY).",
    )
    parser.add_argument("--fetch-ddl", action="store_true", help="Keep raw DDL of both sides in the JSON output.")
    parser.add_argument("--diff", action="store_true", help="Show a unified diff of the normalized DDL for DIFF objects.")
    parser.add_argument("--csv", dest="csv_path", help="Write results to this CSV file.")
    parser.add_argument("--json", dest="json_path", help="Write results to this JSON file.")
    parser.add_argument("--patch", action="store_true", help="Generate patch scripts under [SETTINGS] patch_dir.")
    parser.add_argument("--test-connection", action="store_true", help="Only test both connections and exit.")
    return parser.parse_args(argv)


def run_connection_test(source_env, target_env) -> int:
    exit_code = EXIT_OK
    for env in (source_env, target_env):
        ok, message = test_connection(env)
        if ok:
            log.info("[%s] %s (%s)", env.label, message, env.dsn)
        else:
            log.error("[%s] 连接失败 (%s): %s", env.label, env.dsn, message)
            exit_code = EXIT_ERROR
    return exit_code


def resolve_items(args: argparse.Namespace, settings: Dict, source_conn, target_conn):
    object_list = args.objects or settings.get('object_list', '').strip()
    if object_list:
        return load_object_list(object_list)

    owners = [o.upper() for o in parse_csv_list(','.join(args.owner or []))] or settings['owners_list']
    types = [normalize_object_type(t) for t in parse_csv_list(','.join(args.types or []))]
    types = types or settings['object_types_list']
    if not owners:
        raise ConfigError("未指定对象清单 (--objects / object_list)，也未指定 owner (--owner / owners)。")
    log.info("按 schema 收集对象: owners=%s, types=%s", owners, types)
    return collect_object_identities(source_conn, target_conn, owners, types)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    init_console_logging()

    try:
        source_env, target_env, settings = load_config(Path(args.config))
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        setup_run_logging(settings, timestamp)
        init_oracle_client(settings)
    except ConfigError as exc:
        log.error("[配置错误] %s", exc)
        return EXIT_ERROR

    if args.test_connection:
        return run_connection_test(source_env, target_env)

    generate_patch = args.patch or parse_bool(settings.get('generate_patch'))
    fetch_ddl = args.fetch_ddl or parse_bool(settings.get('fetch_ddl')) or generate_patch
    show_diff = args.diff or parse_bool(settings.get('show_diff'))

    source_conn = None
    target_conn = None
    try:
        log_section("建立连接")
        source_conn = open_connection(source_env)
        target_conn = open_connection(target_env)
        setup_metadata_session(source_conn)
        setup_metadata_session(target_conn)

        log_section("准备对象清单")
        items = resolve_items(args, settings, source_conn, target_conn)
        if not items:
            log.warning("待校验对象为空，程序结束。")
            return EXIT_OK

        log_section("DDL 比对")
        results = validate_objects(
            items,
            OracleDdlSource(source_conn, source_env.label),
            OracleDdlSource(target_conn, target_env.label),
            fetch_ddl=fetch_ddl,
            with_diff=show_diff,
        )

        if generate_patch:
            log_section("修补脚本生成")
            patch_dir = Path(settings.get('patch_dir', 'patches').strip() or 'patches') / timestamp
            ddl_patch.generate_patches(results, source_conn, target_conn, patch_dir)
    except ConfigError as exc:
        log.error("[配置错误] %s", exc)
        return EXIT_ERROR
    except oracledb.Error as exc:
        log.error("[数据库错误] %s", exc)
        return EXIT_ERROR
    finally:
        for conn in (source_conn, target_conn):
            if conn is None:
                continue
            try:
                conn.close()
            except oracledb.Error as exc:
                log.warning("关闭连接失败: %s", exc)

    output_failed = False
    try:
        if args.csv_path:
            write_results_csv(results, args.csv_path)
        if args.json_path:
            write_results_json(results, args.json_path)
    except OSError as exc:
        log.error("[输出错误] 结果文件写入失败: %s", exc)
        output_failed = True

    report_dir = Path(settings.get('report_dir', 'reports').strip() or 'reports')
    report_path = report_dir / f"ddl_parity_{timestamp}.txt"
    counts = print_validation_report(results, source_env.label, target_env.label, report_path)

    if output_failed:
        return EXIT_ERROR
    return EXIT_OK if counts.get(STATUS_MATCH, 0) == len(results) else EXIT_DIFFERENCES


if __name__ == "__main__":
    sys.exit(main())
