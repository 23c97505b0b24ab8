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
两个 Oracle 环境之间的对象 DDL 一致性校验。

功能概要：
1. 从 config.ini 读取 [SOURCE] / [TARGET] 连接信息与 [SETTINGS]。
2. 对清单中的每个对象 (OWNER, NAME, TYPE)，分别通过
   DBMS_METADATA.GET_DDL 从两端取 DDL。
3. 使用 ddl_normalizer 规范化后逐字符比对，结果分为：
     MISSING_IN_BOTH / MISSING_IN_SOURCE / MISSING_IN_TARGET / MATCH / DIFF
4. 单个对象取 DDL 失败 (对象不存在、权限不足等) 只影响该对象自身的结果，
   不会中断整批校验；结果顺序与输入清单一致。

连接的建立 / 关闭由调用方 (ddl_parity.main) 负责。
"""

import configparser
import csv
import difflib
import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

import oracledb

from ddl_normalizer import normalize_ddl, normalize_object_type

log = logging.getLogger(__name__)

CONFIG_DEFAULT_PATH = "config.ini"

# --- 对比结果状态 ---
STATUS_MISSING_IN_BOTH = "MISSING_IN_BOTH"
STATUS_MISSING_IN_SOURCE = "MISSING_IN_SOURCE"
STATUS_MISSING_IN_TARGET = "MISSING_IN_TARGET"
STATUS_MATCH = "MATCH"
STATUS_DIFF = "DIFF"

STATUS_ORDER: Tuple[str, ...] = (
    STATUS_MATCH,
    STATUS_DIFF,
    STATUS_MISSING_IN_TARGET,
    STATUS_MISSING_IN_SOURCE,
    STATUS_MISSING_IN_BOTH,
)

SUPPORTED_OBJECT_TYPES: Tuple[str, ...] = (
    'TABLE',
    'VIEW',
    'MATERIALIZED VIEW',
    'PACKAGE',
    'PACKAGE BODY',
    'PROCEDURE',
    'FUNCTION',
    'TRIGGER',
    'TYPE',
    'TYPE BODY',
    'SEQUENCE',
    'SYNONYM',
    'INDEX',
)

# 未配置 object_types 时，整库比对默认覆盖的类型
DEFAULT_COMPARE_TYPES: Tuple[str, ...] = (
    'TABLE',
    'VIEW',
    'PACKAGE',
    'PACKAGE BODY',
    'PROCEDURE',
    'FUNCTION',
    'TRIGGER',
    'TYPE',
    'TYPE BODY',
    'SEQUENCE',
)

DDL_OBJ_TYPE_MAPPING = {
    'PACKAGE BODY': 'PACKAGE_BODY',
    'MATERIALIZED VIEW': 'MATERIALIZED_VIEW',
    'TYPE BODY': 'TYPE_BODY'
}

OBJECT_NOT_FOUND_CODE = "ORA-31603"

TRUE_VALUES = ('true', '1', 'yes', 'on')


class ConfigError(Exception):
    """Custom exception for configuration issues."""


class EnvConfig(NamedTuple):
    label: str
    user: str
    password: str
    dsn: str


class ObjectIdentity(NamedTuple):
    owner: str
    name: str
    object_type: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}.{self.name}"

    def __str__(self) -> str:
        return f"{self.object_type} {self.full_name}"


class DdlFetch(NamedTuple):
    ddl: Optional[str]
    error: Optional[str] = None


class ValidationResult(NamedTuple):
    item: ObjectIdentity
    status: str
    message: str = ""
    source_ddl: Optional[str] = None
    target_ddl: Optional[str] = None
    diff: Optional[str] = None


# ====================== 配置 ======================

def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    value = str(value).strip().lower()
    if not value:
        return default
    return value in TRUE_VALUES


def parse_csv_list(raw: Optional[str]) -> List[str]:
    return [p.strip() for p in (raw or '').split(',') if p.strip()]


def build_env_config(parser: configparser.ConfigParser, section: str) -> EnvConfig:
    if section not in parser:
        raise ConfigError(f"配置文件缺少 [{section}] 配置段。")

    env = parser[section]
    user = env.get('user', '').strip()
    password = env.get('password', '').strip()
    dsn = env.get('dsn', '').strip()
    if not dsn:
        host = env.get('host', '').strip()
        port = env.get('port', '1521').strip() or '1521'
        service_name = env.get('service_name', '').strip()
        if host and service_name:
            dsn = f"{host}:{port}/{service_name}"

    missing = [key for key, value in (('user', user), ('password', password), ('dsn', dsn)) if not value]
    if missing:
        raise ConfigError(f"[{section}] 缺少必填项: {', '.join(missing)} (dsn 也可用 host/port/service_name 组合)")

    label = env.get('label', '').strip() or section
    return EnvConfig(label=label, user=user, password=password, dsn=dsn)


def load_config(config_file) -> Tuple[EnvConfig, EnvConfig, Dict]:
    """
    读取 config.ini：

        [SOURCE]   label / user / password / dsn (或 host + port + service_name)
        [TARGET]   同上
        [SETTINGS] 可选项，见下方 setdefault
    """
    config_path = Path(config_file)
    log.info("正在加载配置文件: %s", config_path)
    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=("#", ";"), interpolation=None)
    parser.read(config_path, encoding="utf-8")

    source_env = build_env_config(parser, 'SOURCE')
    target_env = build_env_config(parser, 'TARGET')

    settings = dict(parser['SETTINGS']) if 'SETTINGS' in parser else {}
    # Oracle Instant Client 目录 (Thick Mode)，留空则使用 thin 模式
    settings.setdefault('oracle_client_lib_dir', '')
    settings.setdefault('owners', '')
    settings.setdefault('object_types', '')
    settings.setdefault('object_list', '')
    settings.setdefault('report_dir', 'reports')
    settings.setdefault('log_dir', 'logs')
    settings.setdefault('log_level', 'INFO')
    settings.setdefault('fetch_ddl', 'false')
    settings.setdefault('show_diff', 'false')
    settings.setdefault('generate_patch', 'false')
    settings.setdefault('patch_dir', 'patches')

    settings['owners_list'] = [o.upper() for o in parse_csv_list(settings['owners'])]
    type_list: List[str] = []
    for raw_type in parse_csv_list(settings['object_types']):
        obj_type = normalize_object_type(raw_type)
        if obj_type not in SUPPORTED_OBJECT_TYPES:
            raise ConfigError(f"[SETTINGS] object_types 包含不支持的类型: {raw_type}")
        type_list.append(obj_type)
    settings['object_types_list'] = type_list or list(DEFAULT_COMPARE_TYPES)

    log.info("源端: %s (%s)，目标端: %s (%s)", source_env.label, source_env.dsn, target_env.label, target_env.dsn)
    return source_env, target_env, settings


# ====================== 对象清单 ======================

def normalize_identifier(raw: Optional[str]) -> str:
    """未加引号的名字转大写；"quoted" 名字在 Oracle 中区分大小写，去掉引号后原样保留。"""
    value = (raw or '').strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value.upper()


def parse_object_identity(owner: str, name: str, object_type: str) -> ObjectIdentity:
    owner_u = normalize_identifier(owner)
    name_u = normalize_identifier(name)
    obj_type = normalize_object_type(object_type)
    if not owner_u or not name_u:
        raise ValueError("OWNER 与 NAME 不能为空")
    if obj_type not in SUPPORTED_OBJECT_TYPES:
        raise ValueError(f"不支持的对象类型: {object_type}")
    return ObjectIdentity(owner_u, name_u, obj_type)


HEADER_OWNER_CELLS = {'OWNER', 'SCHEMA', 'OWNER.NAME', 'OBJECT_OWNER'}
HEADER_TYPE_CELLS = {'TYPE', 'OBJECT_TYPE', 'OBJECT TYPE'}


def _row_to_identity(cells: List[str]) -> ObjectIdentity:
    if len(cells) >= 3:
        return parse_object_identity(cells[0], cells[1], cells[2])
    if len(cells) == 2 and '.' in cells[0]:
        owner, name = cells[0].split('.', 1)
        return parse_object_identity(owner, name, cells[1])
    raise ValueError("格式应为 OWNER,NAME,TYPE 或 OWNER.NAME,TYPE")


def load_object_list(file_path) -> List[ObjectIdentity]:
    """
    从 CSV 加载待校验对象清单，每行:
        OWNER,NAME,TYPE      或      OWNER.NAME,TYPE
    允许表头、空行与 # 注释；重复对象只保留第一次出现。
    """
    path = Path(file_path)
    log.info("正在加载对象清单: %s", path)
    if not path.exists():
        raise ConfigError(f"对象清单文件不存在: {path}")

    items: List[ObjectIdentity] = []
    seen: Set[ObjectIdentity] = set()
    duplicates = 0
    header_checked = False
    with path.open(encoding="utf-8", newline="") as f:
        for line_no, row in enumerate(csv.reader(f), start=1):
            cells = [c.strip() for c in row]
            if not any(cells) or cells[0].startswith('#'):
                continue
            first_row = not header_checked
            header_checked = True
            if first_row and cells[0].upper() in HEADER_OWNER_CELLS:
                continue
            try:
                identity = _row_to_identity(cells)
            except ValueError as exc:
                # 首行既不是合法对象又以类型列名结尾，按表头处理
                if first_row and cells[-1].upper() in HEADER_TYPE_CELLS:
                    log.debug("对象清单第 %d 行按表头跳过: %s", line_no, ','.join(row))
                    continue
                log.warning("  [清单警告] 第 %d 行无效，已跳过 (%s): %s", line_no, exc, ','.join(row))
                continue
            if identity in seen:
                duplicates += 1
                continue
            seen.add(identity)
            items.append(identity)

    if duplicates:
        log.warning("对象清单中有 %d 个重复对象，已去重。", duplicates)
    log.info("加载了 %d 个待校验对象。", len(items))
    return items


# ====================== Oracle 访问 ======================

def init_oracle_client(settings: Dict) -> None:
    """配置了 oracle_client_lib_dir 时启用 Thick Mode，否则使用 thin 模式。"""
    client_dir = (settings.get('oracle_client_lib_dir') or '').strip()
    if not client_dir:
        log.info("未配置 oracle_client_lib_dir，使用 python-oracledb thin 模式。")
        return

    client_path = Path(client_dir).expanduser()
    if not client_path.exists():
        raise ConfigError(f"指定的 Oracle Instant Client 目录不存在: {client_path}")

    log.info("准备使用 Oracle Instant Client 目录: %s", client_path)
    try:
        oracledb.init_oracle_client(lib_dir=str(client_path))
    except Exception as exc:
        raise ConfigError(f"Oracle Thick Mode 初始化失败: {exc}") from exc


def open_connection(env: EnvConfig):
    log.info("正在连接 %s: %s...", env.label, env.dsn)
    conn = oracledb.connect(user=env.user, password=env.password, dsn=env.dsn)
    log.info("%s 连接成功。", env.label)
    return conn


def test_connection(env: EnvConfig) -> Tuple[bool, str]:
    try:
        with oracledb.connect(user=env.user, password=env.password, dsn=env.dsn) as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1 FROM DUAL")
                cursor.fetchone()
    except oracledb.Error as exc:
        return False, str(exc)
    return True, "Connection successful"


METADATA_SESSION_PLSQL = """
BEGIN
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'SEGMENT_ATTRIBUTES',FALSE);
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'STORAGE',FALSE);
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'TABLESPACE',FALSE);
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'SQLTERMINATOR',TRUE);
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'CONSTRAINTS',TRUE);
  DBMS_METADATA.SET_TRANSFORM_PARAM(DBMS_METADATA.SESSION_TRANSFORM,'REF_CONSTRAINTS',TRUE);
END;
"""


def setup_metadata_session(conn) -> None:
    try:
        with conn.cursor() as cursor:
            cursor.execute(METADATA_SESSION_PLSQL)
    except oracledb.Error as e:
        log.warning("[DDL] 设置 DBMS_METADATA transform 失败: %s", e)


def read_lob_value(value) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, 'read'):
        value = value.read()
    return str(value)


class OracleDdlSource:
    """通过 DBMS_METADATA.GET_DDL 按对象取 DDL。"""

    def __init__(self, conn, label: str):
        self.conn = conn
        self.label = label

    def get_ddl(self, item: ObjectIdentity) -> DdlFetch:
        sql = "SELECT DBMS_METADATA.GET_DDL(:1, :2, :3) FROM DUAL"
        obj_type = DDL_OBJ_TYPE_MAPPING.get(item.object_type, item.object_type)
        try:
            with self.conn.cursor() as cursor:
                cursor.execute(sql, [obj_type, item.name, item.owner])
                row = cursor.fetchone()
                ddl = read_lob_value(row[0]) if row else None
        except oracledb.Error as e:
            message = str(e)
            if OBJECT_NOT_FOUND_CODE in message:
                log.debug("[DDL] %s 中不存在 %s", self.label, item)
                return DdlFetch(None, f"{OBJECT_NOT_FOUND_CODE}: object not found")
            log.warning("[DDL] 从 %s 获取 %s DDL 失败: %s", self.label, item, message)
            return DdlFetch(None, message.splitlines()[0] if message else type(e).__name__)
        if not ddl:
            return DdlFetch(None, "empty DDL")
        return DdlFetch(ddl)


def list_schema_objects(
    conn,
    owners: Sequence[str],
    object_types: Sequence[str]
) -> List[ObjectIdentity]:
    """从 ALL_OBJECTS 列出指定 schema 下的对象 (排除回收站与系统生成对象)。"""
    if not owners or not object_types:
        return []
    owners_u = [o.upper() for o in owners]
    types_u = [normalize_object_type(t) for t in object_types]
    owner_placeholders = ','.join(f":{i + 1}" for i in range(len(owners_u)))
    type_placeholders = ','.join(f":{len(owners_u) + i + 1}" for i in range(len(types_u)))

    sql = f"""
        SELECT OWNER, OBJECT_NAME, OBJECT_TYPE
        FROM ALL_OBJECTS
        WHERE OWNER IN ({owner_placeholders})
          AND OBJECT_TYPE IN ({type_placeholders})
          AND OBJECT_NAME NOT LIKE 'BIN$%'
          AND GENERATED = 'N'
        ORDER BY OWNER, OBJECT_TYPE, OBJECT_NAME
    """
    items: List[ObjectIdentity] = []
    with conn.cursor() as cursor:
        cursor.execute(sql, owners_u + types_u)
        for row in cursor:
            owner = (row[0] or '').strip().upper()
            name = (row[1] or '').strip()
            obj_type = (row[2] or '').strip().upper()
            if owner and name and obj_type:
                items.append(ObjectIdentity(owner, name, obj_type))
    return items


def collect_object_identities(
    source_conn,
    target_conn,
    owners: Sequence[str],
    object_types: Sequence[str]
) -> List[ObjectIdentity]:
    """两端对象清单取并集，按 OWNER / TYPE / NAME 排序。"""
    source_items = list_schema_objects(source_conn, owners, object_types)
    target_items = list_schema_objects(target_conn, owners, object_types)
    log.info("源端对象 %d 个，目标端对象 %d 个。", len(source_items), len(target_items))
    merged = set(source_items) | set(target_items)
    return sorted(merged, key=lambda i: (i.owner, i.object_type, i.name))


# ====================== 比对 ======================

def classify_ddl_pair(source_ddl: Optional[str], target_ddl: Optional[str], object_type: str) -> str:
    if not source_ddl and not target_ddl:
        return STATUS_MISSING_IN_BOTH
    if not source_ddl:
        return STATUS_MISSING_IN_SOURCE
    if not target_ddl:
        return STATUS_MISSING_IN_TARGET
    if normalize_ddl(source_ddl, object_type) == normalize_ddl(target_ddl, object_type):
        return STATUS_MATCH
    return STATUS_DIFF


DIFF_BREAK_PATTERN = re.compile(r'(?<=[,;])\s')


def _diff_lines(normalized: str) -> List[str]:
    return [line for line in DIFF_BREAK_PATTERN.split(normalized) if line]


def build_ddl_diff(
    source_ddl: Optional[str],
    target_ddl: Optional[str],
    object_type: str,
    item: Optional[ObjectIdentity] = None
) -> str:
    """规范化后的 unified diff，每个逗号/分号分隔的片段单独成行便于阅读。"""
    name = item.full_name if item else object_type
    source_lines = _diff_lines(normalize_ddl(source_ddl, object_type))
    target_lines = _diff_lines(normalize_ddl(target_ddl, object_type))
    diff = difflib.unified_diff(
        source_lines,
        target_lines,
        fromfile=f"source/{name}",
        tofile=f"target/{name}",
        lineterm="",
    )
    return "\n".join(diff)


def _safe_fetch(source, item: ObjectIdentity, side: str) -> DdlFetch:
    try:
        return source.get_ddl(item)
    except Exception as exc:
        log.warning("[VALIDATE] %s 端获取 %s 异常: %s", side, item, exc)
        return DdlFetch(None, f"{type(exc).__name__}: {exc}")


def _build_message(status: str, source_fetch: DdlFetch, target_fetch: DdlFetch) -> str:
    if status == STATUS_DIFF:
        return "normalized DDL differs"
    notes = []
    if source_fetch.ddl is None and source_fetch.error:
        notes.append(f"source: {source_fetch.error}")
    if target_fetch.ddl is None and target_fetch.error:
        notes.append(f"target: {target_fetch.error}")
    return "; ".join(notes)


def validate_objects(
    items: Iterable[ObjectIdentity],
    source,
    target,
    fetch_ddl: bool = False,
    with_diff: bool = False,
    progress_every: int = 100
) -> List[ValidationResult]:
    """
    逐个对象比对两端 DDL。source / target 只需提供 get_ddl(item) -> DdlFetch。
    每个对象相互独立，结果顺序与 items 一致。
    """
    item_list = list(items)
    total = len(item_list)
    results: List[ValidationResult] = []

    for idx, item in enumerate(item_list, start=1):
        source_fetch = _safe_fetch(source, item, "source")
        target_fetch = _safe_fetch(target, item, "target")

        try:
            status = classify_ddl_pair(source_fetch.ddl, target_fetch.ddl, item.object_type)
            message = _build_message(status, source_fetch, target_fetch)
        except Exception as exc:
            log.warning("[VALIDATE] 比对 %s 异常: %s", item, exc)
            status = STATUS_DIFF
            message = f"compare failed: {type(exc).__name__}: {exc}"

        diff = None
        if with_diff and status == STATUS_DIFF:
            try:
                diff = build_ddl_diff(source_fetch.ddl, target_fetch.ddl, item.object_type, item)
            except Exception as exc:
                log.warning("[VALIDATE] 生成 %s diff 异常: %s", item, exc)

        log.debug("[VALIDATE] %s -> %s", item, status)
        results.append(ValidationResult(
            item=item,
            status=status,
            message=message,
            source_ddl=source_fetch.ddl if fetch_ddl else None,
            target_ddl=target_fetch.ddl if fetch_ddl else None,
            diff=diff,
        ))

        if progress_every and idx % progress_every == 0 and idx < total:
            log.info("[VALIDATE] 进度 %d/%d", idx, total)

    log.info("[VALIDATE] 校验完成，共 %d 个对象。", total)
    return results


def summarize_results(results: Iterable[ValidationResult]) -> Dict[str, int]:
    counts: Dict[str, int] = {status: 0 for status in STATUS_ORDER}
    for result in results:
        counts[result.status] = counts.get(result.status, 0) + 1
    return counts


# ====================== 结果输出 ======================

CSV_HEADER = ["OWNER", "OBJECT_NAME", "OBJECT_TYPE", "STATUS", "MESSAGE"]


def write_results_csv(results: Iterable[ValidationResult], path) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open('w', encoding='utf-8', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for r in results:
            writer.writerow([r.item.owner, r.item.name, r.item.object_type, r.status, r.message])
    log.info("CSV 结果已写入: %s", out_path)
    return out_path


def result_to_dict(result: ValidationResult) -> Dict[str, object]:
    data: Dict[str, object] = {
        "owner": result.item.owner,
        "name": result.item.name,
        "type": result.item.object_type,
        "status": result.status,
        "message": result.message,
    }
    if result.source_ddl is not None or result.target_ddl is not None:
        data["source_ddl"] = result.source_ddl
        data["target_ddl"] = result.target_ddl
    if result.diff:
        data["diff"] = result.diff
    return data


def write_results_json(results: Iterable[ValidationResult], path) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"results": [result_to_dict(r) for r in results]}
    out_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding='utf-8')
    log.info("JSON 结果已写入: %s", out_path)
    return out_path
