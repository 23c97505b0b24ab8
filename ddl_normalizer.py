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
DBMS_METADATA 输出的 DDL 规范化，用于跨环境对象比对。

normalize_ddl() 产出的字符串对以下差异不敏感：
    * 空白 / 换行格式
    * 系统生成的名字 (SYS_C..., SYS_LOB...$$, SYS_IL...$$)
    * 补充日志子句 (SUPPLEMENTAL LOG GROUP / SUPPLEMENTAL LOG DATA)
    * TABLE 的列/约束声明顺序
    * SEQUENCE 的所有属性 (只关心是否存在)

两段 DDL 的规范化结果逐字符相等即视为一致。
这里的函数全部是纯函数，解析失败时原样返回输入，不向外抛异常。
"""

import re
from typing import List, Optional

SEQUENCE_SENTINEL = "SEQUENCE_PROPERTIES_IGNORED"

SYS_CONSTRAINT_PATTERN = re.compile(r'"?SYS_C\w+"?', re.ASCII)
SYS_LOB_PATTERN = re.compile(r'"?SYS_LOB\d+\$\$?"?')
SYS_LOB_INDEX_PATTERN = re.compile(r'"?SYS_IL\d+\$\$?"?')

# SUPPLEMENTAL LOG GROUP "..." (...) ALWAYS，括号内最多再嵌套两层
SUPPLEMENTAL_LOG_GROUP_PATTERN = re.compile(
    r',\s*SUPPLEMENTAL LOG GROUP\s+"[^"]+"\s*'
    r'\((?:[^)(]|\((?:[^)(]|\([^)(]*\))*\))*\)\s*ALWAYS',
    re.IGNORECASE
)
SUPPLEMENTAL_LOG_GROUP_FALLBACK_PATTERN = re.compile(
    r',\s*SUPPLEMENTAL LOG GROUP.*?\)\s*ALWAYS',
    re.IGNORECASE
)
SUPPLEMENTAL_LOG_DATA_PATTERN = re.compile(
    r',\s*SUPPLEMENTAL LOG DATA\s*\(.*?\)\s*COLUMNS',
    re.IGNORECASE
)
SUPPLEMENTAL_LOG_DATA_LEADING_PATTERN = re.compile(
    r'SUPPLEMENTAL LOG DATA\s*\(.*?\)\s*COLUMNS,?\s*',
    re.IGNORECASE
)
WHITESPACE_PATTERN = re.compile(r'\s+')


def normalize_object_type(object_type: Optional[str]) -> str:
    """'package_body' -> 'PACKAGE BODY'"""
    return ' '.join(str(object_type or '').replace('_', ' ').upper().split())


def split_table_members(body: str) -> List[str]:
    """
    按最外层逗号切分 CREATE TABLE 括号内的成员列表。
    类型自身括号里的逗号 (如 NUMBER(10,2)) 不切分。
    只丢弃末尾的空成员。
    """
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    for ch in body:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1

        if ch == ',' and depth == 0:
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(ch)

    tail = ''.join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def find_matching_paren(text: str, open_idx: int) -> int:
    """返回与 open_idx 处 '(' 配对的 ')' 下标，找不到返回 -1。"""
    depth = 0
    for idx in range(open_idx, len(text)):
        ch = text[idx]
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        if depth == 0:
            return idx
    return -1


def sort_table_content(ddl: str) -> str:
    """
    对 CREATE TABLE 主括号内的列/约束定义排序，使列顺序不影响比对。
    前缀 (CREATE TABLE "OWNER"."NAME" () 与后缀 (配对右括号及之后的存储子句) 保持不变。
    输入异常 (无括号 / 括号不配对) 时原样返回。
    """
    try:
        first_paren = ddl.find('(')
        if first_paren == -1:
            return ddl

        last_paren = find_matching_paren(ddl, first_paren)
        if last_paren == -1:
            return ddl

        pre = ddl[:first_paren + 1]
        body = ddl[first_paren + 1:last_paren]
        post = ddl[last_paren:]

        members = sorted(split_table_members(body))
        return pre + ', '.join(members) + post
    except Exception:
        return ddl


def strip_supplemental_logging(ddl: str) -> str:
    ddl = SUPPLEMENTAL_LOG_GROUP_PATTERN.sub('', ddl)
    ddl = SUPPLEMENTAL_LOG_GROUP_FALLBACK_PATTERN.sub('', ddl)
    ddl = SUPPLEMENTAL_LOG_DATA_PATTERN.sub('', ddl)
    ddl = SUPPLEMENTAL_LOG_DATA_LEADING_PATTERN.sub('', ddl)
    return ddl


def mask_system_names(ddl: str) -> str:
    ddl = SYS_CONSTRAINT_PATTERN.sub('SYS_C_IGNORED', ddl)
    ddl = SYS_LOB_PATTERN.sub('SYS_LOB_IGNORED', ddl)
    ddl = SYS_LOB_INDEX_PATTERN.sub('SYS_IL_IGNORED', ddl)
    return ddl


def normalize_ddl(ddl: Optional[str], object_type: Optional[str]) -> str:
    """
    规范化 DDL 以便比对。空 DDL 返回 ""，表示对象不存在。
    """
    if not ddl:
        return ""

    obj_type = normalize_object_type(object_type)
    if obj_type == 'SEQUENCE':
        return SEQUENCE_SENTINEL

    try:
        clean = mask_system_names(ddl)
        # 补充日志子句来自复制工具 (OGG 等)，与对象结构无关
        clean = strip_supplemental_logging(clean)
        clean = WHITESPACE_PATTERN.sub(' ', clean).strip()
    except Exception:
        return str(ddl)

    if obj_type == 'TABLE':
        clean = sort_table_content(clean)

    return clean


def ddl_equivalent(ddl1: Optional[str], ddl2: Optional[str], object_type: Optional[str]) -> bool:
    return normalize_ddl(ddl1, object_type) == normalize_ddl(ddl2, object_type)
