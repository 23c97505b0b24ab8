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
为 DDL 校验中不一致的对象生成修补脚本 (源端 -> 目标端)。

    * 目标端缺失          -> 源端 DDL 作为 CREATE 脚本
    * 源端缺失            -> 注释掉的 DROP 建议
    * TABLE 两端都存在    -> 基于 ALL_TAB_COLUMNS 的 ALTER TABLE ADD / MODIFY，
                             可能丢数据的变更与 DROP COLUMN 只输出注释，需人工评估
    * 其他代码对象        -> 源端 DDL (CREATE OR REPLACE)

所有脚本写入 patch_dir 下按类型划分的子目录，需人工审核后执行。
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import oracledb

from ddl_validator import (
    STATUS_DIFF,
    STATUS_MISSING_IN_SOURCE,
    STATUS_MISSING_IN_TARGET,
    ObjectIdentity,
    ValidationResult,
)

log = logging.getLogger(__name__)

ColumnMap = Dict[str, Dict]

PATCHABLE_STATUSES = (STATUS_DIFF, STATUS_MISSING_IN_TARGET, STATUS_MISSING_IN_SOURCE)

# DBMS_METADATA 对这些类型不会输出 CREATE OR REPLACE
NON_REPLACEABLE_TYPES = ('INDEX', 'SEQUENCE', 'MATERIALIZED VIEW')

# 除 *CHAR 外需要带长度的类型
LENGTH_TYPES = ('RAW', 'UROWID')


def format_column_type(info: Dict) -> str:
    dt = (info.get("data_type") or "").upper()
    prec = info.get("data_precision")
    scale = info.get("data_scale")
    length = info.get("data_length")
    char_len = info.get("char_length")

    if dt in ("NUMBER", "FLOAT"):
        if prec is not None:
            if scale:
                return f"{dt}({int(prec)},{int(scale)})"
            else:
                return f"{dt}({int(prec)})"
        else:
            return dt

    if "CHAR" in dt or dt in LENGTH_TYPES:
        ln = char_len or length
        if ln:
            return f"{dt}({int(ln)})"
        else:
            return dt

    return dt


def fetch_table_columns(conn, owner: str, table: str) -> ColumnMap:
    sql = """
        SELECT COLUMN_NAME, DATA_TYPE, DATA_LENGTH, DATA_PRECISION, DATA_SCALE, NULLABLE, CHAR_LENGTH
        FROM ALL_TAB_COLUMNS
        WHERE OWNER = :1 AND TABLE_NAME = :2
        ORDER BY COLUMN_ID
    """
    columns: ColumnMap = {}
    with conn.cursor() as cursor:
        cursor.execute(sql, [owner, table])
        for row in cursor:
            columns[row[0]] = {
                "data_type": row[1],
                "data_length": row[2],
                "data_precision": row[3],
                "data_scale": row[4],
                "nullable": row[5],
                "char_length": row[6],
            }
    return columns


def _column_clause(name: str, info: Dict, nullable_clause: str = "") -> str:
    return f'"{name}" {format_column_type(info)}{nullable_clause}'


def _compare_column(src: Dict, tgt: Dict):
    """返回 (changed, destructive)；src 为期望定义，tgt 为待修补端现状。"""
    if (src.get("data_type") or "").upper() != (tgt.get("data_type") or "").upper():
        return True, True

    changed = False
    destructive = False

    src_len = src.get("char_length") or src.get("data_length") or 0
    tgt_len = tgt.get("char_length") or tgt.get("data_length") or 0
    if src_len != tgt_len:
        changed = True
        # 缩短长度可能截断现有数据
        destructive = src_len < tgt_len

    src_prec, tgt_prec = src.get("data_precision"), tgt.get("data_precision")
    src_scale, tgt_scale = src.get("data_scale") or 0, tgt.get("data_scale") or 0
    if src_prec != tgt_prec or src_scale != tgt_scale:
        changed = True
        if src_scale != tgt_scale:
            destructive = True
        elif src_prec is not None and (tgt_prec is None or src_prec < tgt_prec):
            destructive = True

    if src.get("nullable") != tgt.get("nullable"):
        changed = True
        # 改为 NOT NULL 需要校验现有数据
        if src.get("nullable") == 'N':
            destructive = True

    return changed, destructive


def build_table_alter(owner: str, table: str, source_cols: ColumnMap, target_cols: ColumnMap) -> str:
    """
    按列元数据生成目标端 ALTER TABLE 脚本：
      - 源端新增列：ADD
      - 安全的修改 (扩长度、放开 NOT NULL)：MODIFY
      - 可能丢数据的修改：只输出 [WARN] 注释
      - 目标端多余列：注释掉的 DROP COLUMN
    """
    if not source_cols or not target_cols:
        return "-- Unable to analyze table structure for smart altering."

    qualified = f'"{owner}"."{table}"'
    lines: List[str] = []

    new_cols = [
        _column_clause(name, info, " NOT NULL" if info.get("nullable") == 'N' else "")
        for name, info in source_cols.items()
        if name not in target_cols
    ]
    if new_cols:
        lines.append("-- [SAFE] Adding new columns")
        lines.append(f"ALTER TABLE {qualified} ADD ({', '.join(new_cols)});")

    mod_cols: List[str] = []
    warnings: List[str] = []
    for name, src in source_cols.items():
        tgt = target_cols.get(name)
        if tgt is None:
            continue
        changed, destructive = _compare_column(src, tgt)
        if not changed:
            continue
        if destructive:
            warnings.append(
                f"-- [WARN] Column {name} change ({format_column_type(tgt)} -> {format_column_type(src)})"
                f" might cause data loss!"
            )
            continue
        nullable_clause = ""
        if src.get("nullable") != tgt.get("nullable"):
            nullable_clause = " NULL" if src.get("nullable") == 'Y' else " NOT NULL"
        mod_cols.append(_column_clause(name, src, nullable_clause))

    if warnings:
        lines.append("")
        lines.append("-- MANUAL REVIEW REQUIRED FOR MODIFICATIONS:")
        lines.extend(warnings)

    if mod_cols:
        lines.append("")
        lines.append("-- [SAFE] Modifying columns")
        lines.append(f"ALTER TABLE {qualified} MODIFY ({', '.join(mod_cols)});")

    dropped = [name for name in target_cols if name not in source_cols]
    if dropped:
        lines.append("")
        lines.append("-- [DANGER] Destructive changes detected")
        for name in dropped:
            lines.append(f'-- ALTER TABLE {qualified} DROP COLUMN "{name}"; -- commented out for safety')

    if not lines:
        return "-- Structure appears identical (or changes handled by indexes/constraints). Check constraints manually."
    return "\n".join(lines).strip("\n")


def build_patch_script(
    item: ObjectIdentity,
    source_ddl: Optional[str],
    target_ddl: Optional[str],
    source_cols: Optional[ColumnMap] = None,
    target_cols: Optional[ColumnMap] = None
) -> str:
    qualified = f'"{item.owner}"."{item.name}"'
    if not source_ddl:
        return (
            f"-- Object {item.full_name} not found in source. Drop in target?\n"
            f"-- DROP {item.object_type} {qualified};"
        )

    if not target_ddl:
        return f"-- New object patch (create in target)\n{source_ddl.strip()}"

    if item.object_type == 'TABLE':
        if source_cols is None or target_cols is None:
            return "-- Column metadata unavailable, compare the table DDL manually."
        return build_table_alter(item.owner, item.name, source_cols, target_cols)

    if item.object_type in NON_REPLACEABLE_TYPES:
        return (
            f"-- {item.object_type} cannot be replaced in place, drop and re-create after review\n"
            f"-- DROP {item.object_type} {qualified};\n"
            f"{source_ddl.strip()}"
        )

    return f"-- CREATE OR REPLACE logic for {item.object_type}\n{source_ddl.strip()}"


def patch_subdir(object_type: str) -> str:
    return object_type.lower().replace(' ', '_')


def write_patch_file(base_dir: Path, item: ObjectIdentity, script: str) -> Path:
    target_dir = Path(base_dir) / patch_subdir(item.object_type)
    target_dir.mkdir(parents=True, exist_ok=True)
    file_path = target_dir / f"{item.owner}.{item.name}.sql"
    with open(file_path, 'w', encoding='utf-8') as f:
        f.write(f"-- {item.object_type} {item.full_name}\n")
        f.write("-- 本文件由校验工具自动生成，请在目标端执行前仔细审核。\n\n")
        body = script.strip()
        f.write(body)
        f.write('\n')
        last_line = body.splitlines()[-1].strip() if body else ''
        if last_line and not last_line.startswith('--') and not last_line.endswith((';', '/')):
            f.write(';\n')
    log.info("[PATCH] 生成修补脚本: %s", file_path)
    return file_path


def _safe_fetch_columns(conn, item: ObjectIdentity, side: str) -> Optional[ColumnMap]:
    if conn is None:
        return None
    try:
        return fetch_table_columns(conn, item.owner, item.name)
    except oracledb.Error as e:
        log.warning("[PATCH] 获取 %s 端 %s 列定义失败: %s", side, item.full_name, e)
        return None


def generate_patches(
    results: Iterable[ValidationResult],
    source_conn,
    target_conn,
    patch_dir
) -> List[Path]:
    """results 需带 source_ddl / target_ddl (validate_objects 的 fetch_ddl=True)。"""
    written: List[Path] = []
    for result in results:
        if result.status not in PATCHABLE_STATUSES:
            continue
        item = result.item
        source_cols = target_cols = None
        if item.object_type == 'TABLE' and result.status == STATUS_DIFF:
            source_cols = _safe_fetch_columns(source_conn, item, "source")
            target_cols = _safe_fetch_columns(target_conn, item, "target")
        script = build_patch_script(item, result.source_ddl, result.target_ddl, source_cols, target_cols)
        try:
            written.append(write_patch_file(Path(patch_dir), item, script))
        except OSError as exc:
            log.error("[PATCH] 写入 %s 修补脚本失败: %s", item, exc)
    log.info("[PATCH] 共生成 %d 个修补脚本，目录: %s", len(written), patch_dir)
    return written
