"""
sheet2json - ヘッダ行の属性パスに従って、シートのセル群とネストした JSON を相互変換するツール
"""

from __future__ import annotations
import re
import json
import math
import time
import logging
import argparse
import datetime
import zipfile
import sys
import yaml
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

# モジュール全体で使用する外部ライブラリ
from openpyxl import load_workbook, Workbook
from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.utils.cell import coordinate_from_string
from openpyxl.utils.exceptions import CellCoordinatesException, IllegalCharacterError, InvalidFileException
from jsonschema import Draft7Validator, FormatChecker
from jsonschema.exceptions import SchemaError

# ロガー
logger = logging.getLogger(__name__)

# 可読性のための型エイリアス
JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, "JSONDict", "JSONList"]
JSONDict = Dict[str, JSONValue]
JSONList = List[JSONValue]
Record = Dict[str, Any]
CollectionMap = Dict[str, Dict[str, Record]]

# 日付型の書き出し書式（ローカルタイム）
DATE_TEXT_FORMAT = "%Y/%m/%d %H:%M:%S"

# 連携用の一時フィールド
REF_FIELD = "__ref"
TRAIL_FIELD = "__in"
MAP_KEY_FIELD = "__key"


@dataclass
class ProcessingStats:
    """処理全体の統計情報を収集するシンプルなデータクラス。

    - sheets_processed: 変換したシート数
    - records_folded: 組み立てたレコード数
    - cells_generated: 書き出しセル数
    - errors: 発生したエラーメッセージの一覧
    - start_time/end_time: 処理の開始/終了時刻（秒）
    """

    sheets_processed: int = 0
    records_folded: int = 0
    cells_generated: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def start_processing(self) -> None:
        self.start_time = time.time()

    def end_processing(self) -> None:
        self.end_time = time.time()

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def get_duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return max(0.0, self.end_time - self.start_time)

    def log_summary(self) -> None:
        """収集した統計のサマリをINFOログに出力する。"""
        logger.info(
            "処理統計サマリ: sheets=%d, records=%d, cells=%d, errors=%d, warnings=%d, duration=%.3fs",
            self.sheets_processed,
            self.records_folded,
            self.cells_generated,
            len(self.errors),
            len(self.warnings),
            self.get_duration(),
        )


# =============================================================================
# Exceptions
# =============================================================================


class ConfigurationError(Exception):
    """シート設定・スキーマ・CLI 設定の不備。処理中の操作は中断される。"""


class PathConflictError(ConfigurationError):
    """パス走査中に、既存値が期待するコンテナ型と異なっていた。"""


class LinkageError(Exception):
    """副シートのレコードを起点レコードへ連結できなかった。"""


class FileProcessingError(Exception):
    pass


# =============================================================================
# Cells
# =============================================================================


@dataclass(frozen=True)
class Cell:
    """1 セル分の値。row/col はともに 1 始まり。"""

    row: int
    col: int
    value: Any

    @property
    def column(self) -> str:
        return get_column_letter(self.col)

    @property
    def address(self) -> str:
        return f"{self.column}{self.row}"

    @classmethod
    def from_address(cls, address: str, value: Any) -> "Cell":
        """A1 形式の参照からセルを作る。

        例:
            Cell.from_address("B3", "x") -> Cell(row=3, col=2, value="x")
        """
        try:
            column, row = coordinate_from_string(str(address).strip().upper())
            return cls(row=row, col=column_index_from_string(column), value=value)
        except (CellCoordinatesException, ValueError) as e:
            raise ConfigurationError(f"無効なセル参照です: {address}") from e

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Cell":
        """{column|col, row, value} 形式の辞書から作る（column は列文字、col は列番号）。"""
        value = data.get("value")
        if data.get("col") is not None:
            return cls(row=int(data["row"]), col=int(data["col"]), value=value)
        if data.get("column") is not None:
            return cls.from_address(f"{data['column']}{int(data['row'])}", value)
        if data.get("cell") is not None:
            return cls.from_address(str(data["cell"]), value)
        raise ConfigurationError(f"セルの列が指定されていません: {dict(data)!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"col": self.col, "row": self.row, "value": self.value}


def _as_cell(item: Union[Cell, Mapping[str, Any]]) -> Cell:
    if isinstance(item, Cell):
        return item
    return Cell.from_mapping(item)


def cells_from_rows(rows: Iterable[Sequence[Any]]) -> List[Cell]:
    """行優先の二次元配列をセルのリストに変換する。空文字と None は除外。"""
    cells: List[Cell] = []
    for i, row in enumerate(rows, start=1):
        for j, value in enumerate(row, start=1):
            if value is None or value == "":
                continue
            cells.append(Cell(row=i, col=j, value=value))
    return cells


# =============================================================================
# Attribute Parser
# =============================================================================

_TYPE_SUFFIX_RE = re.compile(r":(\w+)$")


class SegmentKind(Enum):
    PLAIN = ""
    ARRAY = "#"
    SPLIT = "$"


@dataclass(frozen=True)
class PathSegment:
    """属性パスの 1 区間。先頭の # は配列要素、$ は区切り文字列配列を表す。"""

    name: str
    kind: SegmentKind = SegmentKind.PLAIN

    @classmethod
    def parse(cls, raw: str) -> "PathSegment":
        if raw.startswith("#"):
            return cls(raw[1:], SegmentKind.ARRAY)
        if raw.startswith("$"):
            return cls(raw[1:], SegmentKind.SPLIT)
        return cls(raw)

    @property
    def is_array(self) -> bool:
        return self.kind is SegmentKind.ARRAY

    @property
    def is_split(self) -> bool:
        return self.kind is SegmentKind.SPLIT

    def __str__(self) -> str:
        return f"{self.kind.value}{self.name}"


@dataclass(frozen=True)
class AttributeDescriptor:
    """属性行の 1 セルを解析した結果。

    - key: 型サフィックスを除いた属性文字列（マーカー込み）
    - segments: key を "." で分割した区間
    - type: 小文字化した型名。サフィックスが無ければ空文字
    """

    key: str
    segments: Tuple[PathSegment, ...]
    type: str = ""

    @property
    def key_path(self) -> Tuple[str, ...]:
        return tuple(str(s) for s in self.segments)

    @property
    def lookup_path(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.segments)

    @property
    def leaf(self) -> PathSegment:
        return self.segments[-1]

    @property
    def is_index(self) -> bool:
        return self.type == "index"

    @property
    def has_array(self) -> bool:
        return any(s.is_array for s in self.segments)

    @property
    def text(self) -> str:
        return f"{self.key}:{self.type}" if self.type else self.key

    def prefix(self, position: int) -> str:
        """先頭から position 番目（0 始まり、含む）までのマーカー付きパス。"""
        return ".".join(self.key_path[: position + 1])


def parse_attribute(value: Any) -> AttributeDescriptor:
    """
    属性セルの文字列を解析する

    例:
        "obj.value:number" -> key="obj.value", type="number"
        "#arr.code"        -> key="#arr.code", type=""
    """
    text = str(value)
    match = _TYPE_SUFFIX_RE.search(text)
    type_name = match.group(1).lower() if match else ""
    key = _TYPE_SUFFIX_RE.sub("", text)
    segments = tuple(PathSegment.parse(part) for part in key.split("."))
    return AttributeDescriptor(key=key, segments=segments, type=type_name)


# =============================================================================
# Type Coercion Registry
# =============================================================================

_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INTEGER_RE = re.compile(r"[+-]?\d+")
_RADIX_RE = re.compile(r"0(?:[xX][0-9a-fA-F]+|[bB][01]+|[oO][0-7]+)")
_INFINITY_RE = re.compile(r"([+-]?)Infinity")
_DATE_INPUT_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def _identity(value: Any) -> Any:
    return value


def _parse_number(value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    if _INTEGER_RE.fullmatch(text):
        return int(text)
    if _RADIX_RE.fullmatch(text):
        return int(text, 0)
    infinity = _INFINITY_RE.fullmatch(text)
    if infinity:
        return -math.inf if infinity.group(1) == "-" else math.inf
    if not _NUMBER_RE.fullmatch(text):
        return math.nan
    number = float(text)
    if math.isfinite(number) and number.is_integer():
        return int(number)
    return number


def _parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() != "false" and value != "0"
    return bool(value)


def _epoch_millis(value: datetime.datetime) -> int:
    return int(round(value.timestamp() * 1000))


def _parse_date(value: Any) -> Union[int, float]:
    """日時をエポックからのミリ秒に変換する。タイムゾーン無しはローカル時刻として扱う。"""
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, datetime.datetime):
        return _epoch_millis(value)
    if isinstance(value, datetime.date):
        return _epoch_millis(datetime.datetime.combine(value, datetime.time()))
    text = str(value).strip()
    for fmt in _DATE_INPUT_FORMATS:
        try:
            return _epoch_millis(datetime.datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return _epoch_millis(datetime.datetime.fromisoformat(text))
    except ValueError:
        return math.nan


def _parse_auto(value: Any) -> Any:
    number = _parse_number(value)
    if isinstance(number, float) and math.isnan(number):
        return value
    return number


def _stringify_date(value: Any) -> str:
    if isinstance(value, datetime.datetime):
        return value.strftime(DATE_TEXT_FORMAT)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"日時（ミリ秒）ではありません: {value!r}")
    return datetime.datetime.fromtimestamp(value / 1000).strftime(DATE_TEXT_FORMAT)


@dataclass(frozen=True)
class TypeConverter:
    """型名ごとの変換関数（parse: 読込時、stringify: 書出し時）。"""

    name: str
    parse: Callable[[Any], Any]
    stringify: Callable[[Any], Any] = _identity


TYPE_CONVERTERS: Dict[str, TypeConverter] = {
    "string": TypeConverter("string", _identity),
    "number": TypeConverter("number", _parse_number),
    "num": TypeConverter("number", _parse_number),
    "boolean": TypeConverter("boolean", _parse_boolean),
    "bool": TypeConverter("boolean", _parse_boolean),
    "date": TypeConverter("date", _parse_date, _stringify_date),
    "auto": TypeConverter("auto", _parse_auto),
}


def get_converter(type_name: Optional[str]) -> Optional[TypeConverter]:
    return TYPE_CONVERTERS.get((type_name or "").lower())


def coerce_value(type_name: Optional[str], value: Any) -> Any:
    """読込時の型変換。未登録の型名は値をそのまま返す。"""
    converter = get_converter(type_name)
    return converter.parse(value) if converter else value


def stringify_value(type_name: Optional[str], value: Any) -> Any:
    """書出し時の変換。未登録の型名は auto（素通し）扱い。"""
    converter = get_converter(type_name) or TYPE_CONVERTERS["auto"]
    return converter.stringify(value)


def coerce_split_value(type_name: Optional[str], value: Any) -> List[Any]:
    """カンマ区切りの値を分割し、要素ごとに型変換する。"""
    parts = value if isinstance(value, list) else str(value).split(",")
    return [coerce_value(type_name, part) for part in parts]


def stringify_split_value(type_name: Optional[str], values: Any) -> str:
    if not isinstance(values, (list, tuple)):
        values = [values]
    return ",".join(to_cell_text(stringify_value(type_name, v)) for v in values)


def to_cell_text(value: Any) -> str:
    """値をシート上の文字列表現に変換する（連結キーや区切り配列の結合に使用）。"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


# =============================================================================
# Tree walk
# =============================================================================


@dataclass(frozen=True)
class PathStep:
    """ツリー走査の 1 ステップ。container が None の場合は参照のみで自動生成しない。"""

    key: Union[str, int]
    container: Optional[type] = None


def _as_index(key: Union[str, int]) -> Optional[int]:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if key >= 0 else None
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


def get_child(node: Any, key: Union[str, int]) -> Any:
    if isinstance(node, dict):
        return node.get(key)
    if isinstance(node, list):
        idx = _as_index(key)
        if idx is not None and idx < len(node):
            return node[idx]
    return None


def set_child(node: Any, key: Union[str, int], value: Any) -> None:
    if isinstance(node, dict):
        node[key] = value
        return
    if isinstance(node, list):
        idx = _as_index(key)
        if idx is None:
            raise PathConflictError(f"配列に対して数値でないキーは使えません: {key!r}")
        if idx >= len(node):
            node.extend([None] * (idx + 1 - len(node)))
        node[idx] = value
        return
    raise PathConflictError(f"コンテナでない値の下には書き込めません: key={key!r}")


def ensure_child(node: Any, key: Union[str, int], container: type) -> Any:
    """node[key] を返す。未設定なら container() を生成して格納する。"""
    child = get_child(node, key)
    if child is None:
        child = container()
        set_child(node, key, child)
    elif not isinstance(child, container):
        raise PathConflictError(
            f"既存の値の型が一致しません: key={key!r}, expected={container.__name__}, actual={type(child).__name__}"
        )
    return child


def walk_path(root: Any, steps: Iterable[PathStep]) -> Any:
    """steps に従って下降し、到達したノードを返す。参照のみのステップで値が無ければ None。"""
    node = root
    for step in steps:
        if step.container is None:
            node = get_child(node, step.key)
            if node is None:
                return None
        else:
            node = ensure_child(node, step.key, step.container)
    return node


def get_by_path(data: Any, dotted: Optional[str]) -> Any:
    """"a.#b.$c" のようなパスで値を参照する（マーカーは無視）。"""
    if not dotted:
        return None
    node = data
    for part in dotted.split("."):
        node = get_child(node, PathSegment.parse(part).name)
        if node is None:
            return None
    return node


# =============================================================================
# Sheet options
# =============================================================================

_SHEET_TYPES = (None, "", "origin", "array", "map")
_LINE_OPTIONS = ("attr_line", "desc_line", "data_line")


def _as_line_number(name: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} は整数で指定してください: {value!r}") from e
    if number < 1:
        raise ConfigurationError(f"{name} は 1 以上で指定してください: {number}")
    return number


def _as_ref_keys(value: Any) -> List[str]:
    if isinstance(value, str):
        keys = [value]
    elif isinstance(value, (list, tuple)):
        keys = [str(v) for v in value]
    else:
        raise ConfigurationError(f"ref_keys はリストで指定してください: {value!r}")
    if not keys:
        raise ConfigurationError("ref_keys が空です")
    return keys


def _validate_lines(attr_line: int, desc_line: int, data_line: int) -> None:
    if not attr_line < desc_line < data_line:
        raise ConfigurationError(
            f"行指定が不正です（attr_line < desc_line < data_line）: {attr_line}, {desc_line}, {data_line}"
        )


@dataclass(frozen=True)
class SheetDefaults:
    """全シート共通の既定レイアウト。"""

    option_cell: str = "A1"
    attr_line: int = 2
    desc_line: int = 3
    data_line: int = 4
    ref_keys: Tuple[str, ...] = ("_id",)

    def __post_init__(self) -> None:
        _validate_lines(self.attr_line, self.desc_line, self.data_line)
        if not self.ref_keys:
            raise ConfigurationError("ref_keys が空です")
        # 参照形式の検証のみ
        Cell.from_address(self.option_cell, None)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SheetDefaults":
        """設定ファイル由来の辞書から作る。キーはハイフン/アンダースコアどちらでも可。"""
        values = {str(k).replace("-", "_"): v for k, v in data.items() if v is not None}
        kwargs: Dict[str, Any] = {}
        if "option_cell" in values:
            kwargs["option_cell"] = str(values["option_cell"])
        for name in _LINE_OPTIONS:
            if name in values:
                kwargs[name] = _as_line_number(name, values[name])
        if "ref_keys" in values:
            kwargs["ref_keys"] = tuple(_as_ref_keys(values["ref_keys"]))
        elif "ref_key" in values:
            kwargs["ref_keys"] = (str(values["ref_key"]),)
        return cls(**kwargs)


DEFAULT_SHEET_DEFAULTS = SheetDefaults()


@dataclass
class SheetOptions:
    """シートごとのオプション。オプションセルの JSON を既定値に上書きマージしたもの。

    - type: None/"origin" は起点シート、"array"/"map" は起点レコードへ差し込む副シート
    - key: 副シートの差し込み先パス（"." 区切り）
    - format: 列文字 -> 属性の対応
    - extra: 上記以外のオプションセルのキー（そのまま保持）
    """

    attr_line: int = 2
    desc_line: int = 3
    data_line: int = 4
    ref_keys: List[str] = field(default_factory=lambda: ["_id"])
    name: Optional[str] = None
    type: Optional[str] = None
    key: Optional[str] = None
    format: Dict[str, AttributeDescriptor] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_defaults(cls, defaults: SheetDefaults) -> "SheetOptions":
        return cls(
            attr_line=defaults.attr_line,
            desc_line=defaults.desc_line,
            data_line=defaults.data_line,
            ref_keys=list(defaults.ref_keys),
        )

    @property
    def is_origin(self) -> bool:
        return self.type in (None, "", "origin")

    def merge(self, overrides: Mapping[str, Any]) -> None:
        values = dict(overrides)
        # 旧形式の単数 ref_key
        if "ref_key" in values:
            ref_key = values.pop("ref_key")
            values.setdefault("ref_keys", [ref_key])
        for key, value in values.items():
            if key in _LINE_OPTIONS:
                setattr(self, key, _as_line_number(key, value))
            elif key == "ref_keys":
                self.ref_keys = _as_ref_keys(value)
            elif key in ("name", "type", "key"):
                setattr(self, key, None if value is None else str(value))
            else:
                self.extra[key] = value
        self.validate()

    def validate(self) -> None:
        if self.type not in _SHEET_TYPES:
            raise ConfigurationError(f"未対応のシート種別です: {self.type}")
        _validate_lines(self.attr_line, self.desc_line, self.data_line)
        if not self.ref_keys:
            raise ConfigurationError("ref_keys が空です")

    def to_dict(self) -> Dict[str, Any]:
        """オプションセルへ書き出す形式の辞書。"""
        result: Dict[str, Any] = {}
        for name in ("type", "key", "name"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        result.update(
            ref_keys=list(self.ref_keys),
            attr_line=self.attr_line,
            desc_line=self.desc_line,
            data_line=self.data_line,
        )
        result.update(self.extra)
        return result


def parse_option_cell(value: Any) -> Dict[str, Any]:
    """オプションセルの JSON を解析する。不正な場合は ConfigurationError。"""
    if isinstance(value, Mapping):
        return dict(value)
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"オプションセルの JSON が不正です: {e}") from e
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"オプションセルはオブジェクトで指定してください: {value!r}")
    return loaded


# =============================================================================
# Grid Folder
# =============================================================================


@dataclass
class SheetData:
    """1 シート分の組み立て結果。"""

    name: str
    opts: SheetOptions
    records: List[Record] = field(default_factory=list)


@dataclass(frozen=True)
class SheetError:
    name: str
    error: Exception


@dataclass
class FoldBatch:
    results: List[SheetData] = field(default_factory=list)
    errors: List[SheetError] = field(default_factory=list)


@dataclass
class _IndexCounter:
    value: int
    pinned: bool = False
    row: Optional[int] = None


def _parse_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.match(r"\s*([+-]?\d+)", str(value))
    return int(match.group(1)) if match else None


class SheetFolder:
    """セル群をレコードのリストへ組み立てる。

    配列インデックスのカウンタはインスタンスが保持し、fold() のたびに reset() される。
    index 型の列で設定されたカウンタ（pinned）は行が変わっても進まない。
    それ以外のカウンタは行が変わるたびに 1 進む。
    """

    def __init__(self, defaults: Optional[SheetDefaults] = None):
        self.defaults = defaults or DEFAULT_SHEET_DEFAULTS
        self._option_address = Cell.from_address(self.defaults.option_cell, None).address
        self._counters: Dict[str, _IndexCounter] = {}

    def reset(self) -> None:
        self._counters = {}

    def fold(self, cells: Iterable[Union[Cell, Mapping[str, Any]]], name: str = "") -> SheetData:
        self.reset()
        opts = SheetOptions.from_defaults(self.defaults)
        records: List[Record] = []
        before_row: Optional[int] = None

        for cell in sorted((_as_cell(c) for c in cells), key=lambda c: (c.row, c.col)):
            if cell.row != before_row:
                self._advance_counters()
                before_row = cell.row

            if cell.address == self._option_address:
                opts.merge(parse_option_cell(cell.value))
                continue

            if cell.row == opts.attr_line:
                opts.format[cell.column] = parse_attribute(cell.value)
                continue

            descriptor = opts.format.get(cell.column)
            if descriptor is None or cell.row < opts.data_line:
                continue

            if descriptor.is_index:
                self._update_index(descriptor.key, cell)
                continue

            if self._starts_record(opts, descriptor):
                self._reset_for_record(cell.row)
                records.append({})

            if not records:
                logger.warning("レコード開始列より前のデータを無視します: %s %s", name, cell.address)
                continue

            self._write_value(records[-1], descriptor, cell.value)

        logger.debug("シートを組み立てました: %s (%d件)", name, len(records))
        return SheetData(name=name, opts=opts, records=records)

    @staticmethod
    def _starts_record(opts: SheetOptions, descriptor: AttributeDescriptor) -> bool:
        if opts.is_origin and descriptor.key == opts.ref_keys[0]:
            return True
        return descriptor.key in (REF_FIELD, f"{REF_FIELD}_0")

    def _advance_counters(self) -> None:
        for counter in self._counters.values():
            if not counter.pinned:
                counter.value += 1

    def _reset_for_record(self, row: int) -> None:
        # 同じ行で index 列が設定したカウンタだけを引き継ぐ
        self._counters = {k: c for k, c in self._counters.items() if c.pinned and c.row == row}

    def _update_index(self, key: str, cell: Cell) -> None:
        index = _parse_index(cell.value)
        if index is None or index < 0:
            logger.warning("index 列の値が 0 以上の整数ではありません: %s=%r", cell.address, cell.value)
            return
        current = self._counters.get(key)
        if current is not None and current.pinned and current.value == index:
            current.row = cell.row
            return
        self._counters[key] = _IndexCounter(index, pinned=True, row=cell.row)
        # 配下の繰り返しグループは先頭から数え直す
        nested = f"{key}."
        for other_key, counter in self._counters.items():
            if other_key.startswith(nested):
                counter.value = 0

    def _array_index(self, path_key: str, array: List[Any]) -> int:
        counter = self._counters.get(path_key)
        if counter is None:
            counter = _IndexCounter(len(array) - 1 if array else 0)
            self._counters[path_key] = counter
        return counter.value

    def _write_value(self, record: Record, descriptor: AttributeDescriptor, value: Any) -> None:
        node: Any = record
        last = len(descriptor.segments) - 1
        for i, segment in enumerate(descriptor.segments):
            if segment.is_array:
                array = ensure_child(node, segment.name, list)
                index = self._array_index(descriptor.prefix(i), array)
                if i < last:
                    node = ensure_child(array, index, dict)
                    continue
                node, key = array, index
            elif i < last:
                node = ensure_child(node, segment.name, dict)
                continue
            else:
                key = segment.name

            # 同一キーへの書き込みは最初の値を優先
            if get_child(node, key) is not None:
                logger.debug("既に値があるため書き込みを省略します: %s", descriptor.text)
                return
            if segment.is_split:
                set_child(node, key, coerce_split_value(descriptor.type, value))
            else:
                set_child(node, key, coerce_value(descriptor.type, value))


def fold_sheet(
    cells: Iterable[Union[Cell, Mapping[str, Any]]],
    name: str = "",
    defaults: Optional[SheetDefaults] = None,
) -> SheetData:
    return SheetFolder(defaults).fold(cells, name)


def fold_sheets(
    sheets: Mapping[str, Iterable[Union[Cell, Mapping[str, Any]]]],
    defaults: Optional[SheetDefaults] = None,
) -> FoldBatch:
    """複数シートを組み立てる。失敗したシートは errors に記録し、他のシートは継続する。"""
    folder = SheetFolder(defaults)
    batch = FoldBatch()
    for name, cells in sheets.items():
        try:
            batch.results.append(folder.fold(cells, name))
        except Exception as e:
            # シート単位の最上位ハンドラ。記録して次のシートへ
            logger.exception("シート形式が不正です: %s", name)
            batch.errors.append(SheetError(name=name, error=e))
    return batch


# =============================================================================
# Cross-Sheet Linker
# =============================================================================

_TRAIL_INDEX_RE = re.compile(r"^#.+:(\d+)$")


@dataclass
class MergeResult:
    """to_json() の結果。errors はコレクション名 -> 連結できなかったレコード。"""

    collection_map: CollectionMap = field(default_factory=dict)
    option_map: Dict[str, SheetOptions] = field(default_factory=dict)
    errors: Dict[str, List[Record]] = field(default_factory=dict)


def composite_key(values: Iterable[Any]) -> str:
    return ".".join(to_cell_text(v) for v in values)


def _dump_record(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def _reference_key(opts: SheetOptions, data: Record) -> str:
    if data.get(REF_FIELD) is not None:
        return to_cell_text(data[REF_FIELD])
    return composite_key(data.get(f"{REF_FIELD}_{i}") for i in range(len(opts.ref_keys)))


def _trail_index(trail: List[str], position: int) -> Optional[int]:
    segment = trail[position] if position < len(trail) else ""
    match = _TRAIL_INDEX_RE.match(segment)
    if match:
        return int(match.group(1))
    if segment.isdigit():
        return int(segment)
    return None


def _link_steps(opts: SheetOptions, trail: List[str]) -> List[PathStep]:
    segments = str(opts.key).split(".")
    last = len(segments) - 1
    steps: List[PathStep] = []
    for i, segment in enumerate(segments):
        if segment.startswith("#"):
            index = _trail_index(trail, i)
            if index is None:
                raise LinkageError("配列のインデックスが見つかりません")
            steps.append(PathStep(segment[1:], list))
            steps.append(PathStep(index, dict))
        elif segment == "$":
            if i >= len(trail) or not trail[i]:
                raise LinkageError("__in に対応するキーが見つかりません")
            steps.append(PathStep(trail[i]))
        elif i == last:
            steps.append(PathStep(segment, list if opts.type == "array" else dict))
        else:
            steps.append(PathStep(segment, dict))
    return steps


def _resolve_target(data_map: Mapping[str, Record], opts: SheetOptions, data: Record) -> Record:
    origin = data_map.get(_reference_key(opts, data))
    if origin is None:
        raise LinkageError("起点データが見つかりません")
    if not opts.key:
        raise LinkageError("差し込み先 key が指定されていません")
    map_key = data.get(MAP_KEY_FIELD)
    if opts.type == "map" and (map_key is None or map_key == ""):
        raise LinkageError("__key が見つかりません")

    trail = str(data[TRAIL_FIELD]).split(".") if data.get(TRAIL_FIELD) else []
    target = walk_path(origin, _link_steps(opts, trail))
    if target is None:
        raise LinkageError("起点データの途中経路が見つかりません")

    if opts.type == "array":
        if not isinstance(target, list):
            raise LinkageError("差し込み先が配列ではありません")
        target.append({})
        return target[-1]

    if not isinstance(target, dict):
        raise LinkageError("差し込み先がオブジェクトではありません")
    entry: Record = {}
    target[to_cell_text(map_key)] = entry
    return entry


def find_origin(data_map: Mapping[str, Record], opts: SheetOptions, data: Record) -> Optional[Record]:
    """
    副シートのレコードの差し込み先を起点レコード内に用意して返す。

    見つからない場合はエラーログを出して None を返す。
    opts.type が array/map 以外なら ConfigurationError。
    """
    if opts.type not in ("array", "map"):
        raise ConfigurationError(f"未対応のシート種別です: {opts.type}")
    try:
        return _resolve_target(data_map, opts, data)
    except (LinkageError, PathConflictError) as e:
        logger.error("%s %s", e, _dump_record(data))
        return None


def strip_link_fields(data: Record) -> Record:
    for key in list(data):
        if key.startswith(REF_FIELD) or key in (TRAIL_FIELD, MAP_KEY_FIELD):
            del data[key]
    return data


def _merge_order(sheet_datas: Sequence[SheetData]) -> List[SheetData]:
    # 起点シートを先に、副シートは差し込み先の浅い順に
    def _rank(sheet: SheetData) -> Tuple[int, int]:
        if sheet.opts.is_origin:
            return (0, 0)
        return (1, len(str(sheet.opts.key or "").split(".")))

    return sorted(sheet_datas, key=_rank)


def _merge_options(option_map: Dict[str, SheetOptions], name: str, opts: SheetOptions) -> None:
    existing = option_map.get(name)
    if existing is None:
        option_map[name] = opts
        return
    merged = SheetOptions(
        attr_line=existing.attr_line,
        desc_line=existing.desc_line,
        data_line=existing.data_line,
        ref_keys=list(existing.ref_keys),
        name=existing.name,
        type=existing.type,
        key=existing.key,
        format={**existing.format, **opts.format},
        extra={**opts.extra, **existing.extra},
    )
    option_map[name] = merged


def to_json(sheet_datas: Sequence[SheetData]) -> MergeResult:
    """
    組み立て済みシート群を 1 つのコレクションマップへまとめる。

    起点シートのレコードは ref_keys の値を "." で連結したキーで登録し、
    副シート（array/map）のレコードは対応する起点レコードへ差し込む。
    連結できなかったレコードは errors に集め、処理は継続する。
    """
    result = MergeResult()
    for sheet in _merge_order(sheet_datas):
        opts = sheet.opts
        name = opts.name or sheet.name
        data_map = result.collection_map.setdefault(name, {})
        _merge_options(result.option_map, name, opts)

        for data in sheet.records:
            if opts.is_origin:
                key = composite_key(data.get(ref_key) for ref_key in opts.ref_keys)
                if key in data_map:
                    logger.warning("参照キーが重複しています。後のレコードで上書きします: %s[%s]", name, key)
                data_map[key] = data
                continue

            target = find_origin(data_map, opts, data)
            if target is None:
                result.errors.setdefault(name, []).append(data)
                continue
            target.update(strip_link_fields(data))

    for name, records in result.errors.items():
        logger.warning("連結できなかったレコード: %s (%d件)", name, len(records))
    return result


# =============================================================================
# Record Flattener
# =============================================================================


@dataclass
class WorksheetData:
    """書き出し対象シートの定義。opts はオプションセルへ書き出す辞書。"""

    name: Optional[str]
    opts: Dict[str, Any]
    format: List[str]
    description: List[str] = field(default_factory=list)
    datas: List[Any] = field(default_factory=list)


@dataclass
class CellData:
    max_col: int
    max_row: int
    cells: List[Cell]
    name: Optional[str]
    opts: Dict[str, Any]


def _iter_leaf_values(
    node: Any, segments: Sequence[PathSegment], offset: int = 0, as_index: bool = False
) -> Iterator[Tuple[int, Any]]:
    """(行オフセット, 値) を列挙する。配列区間では要素ごとにオフセットが進む。"""
    segment, rest = segments[0], segments[1:]
    child = get_child(node, segment.name) if isinstance(node, dict) else None
    if child is None:
        return
    if segment.is_array:
        if not isinstance(child, list):
            return
        for j, element in enumerate(child):
            if element is None:
                continue
            if rest:
                yield from _iter_leaf_values(element, rest, offset + j, as_index)
            else:
                yield offset + j, (j if as_index else element)
        return
    if rest:
        yield from _iter_leaf_values(child, rest, offset, as_index)
        return
    yield offset, child


def _cell_value(descriptor: AttributeDescriptor, value: Any) -> Any:
    if descriptor.leaf.is_split:
        return stringify_split_value(descriptor.type, value)
    if isinstance(value, (dict, list)):
        raise TypeError(f"スカラー値ではありません: {type(value).__name__}")
    return stringify_value(descriptor.type, value)


def _emit_record(
    cells: List[Cell], descriptors: Sequence[AttributeDescriptor], data: Any, row: int
) -> int:
    """1 レコード分のセルを追加し、使用した最終行を返す。"""
    last_row = row
    for col, descriptor in enumerate(descriptors, start=1):
        try:
            for offset, value in _iter_leaf_values(data, descriptor.segments, as_index=descriptor.is_index):
                cells.append(Cell(row=row + offset, col=col, value=_cell_value(descriptor, value)))
                last_row = max(last_row, row + offset)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            logger.error("セル値の変換に失敗しました: %s %s", descriptor.text, e)
    return last_row


def _iter_export_records(datas: Iterable[Any], layout: SheetOptions) -> Iterator[Record]:
    if layout.is_origin:
        yield from datas
        return
    for data in datas:
        refs = {f"{REF_FIELD}_{i}": get_child(data, ref_key) for i, ref_key in enumerate(layout.ref_keys)}
        children = get_by_path(data, layout.key)
        if layout.type == "map":
            items = children.items() if isinstance(children, dict) else []
            for map_key, element in items:
                if isinstance(element, dict):
                    yield {**refs, MAP_KEY_FIELD: map_key, **element}
            continue
        for element in children if isinstance(children, list) else []:
            if not isinstance(element, dict):
                logger.warning("オブジェクトでない配列要素は書き出せません: %s %r", layout.key, element)
                continue
            yield {**refs, **element}


def to_cells(worksheet_data: WorksheetData, defaults: Optional[SheetDefaults] = None) -> CellData:
    """
    レコード群をセルのリストへ展開する（SheetFolder.fold の逆変換）。

    オプションセル・属性行・説明行も出力する。
    配列（#）を含む属性は要素ごとに行をずらして出力し、
    次のレコードは使用済みの最終行の次から始まる。
    """
    defaults = defaults or DEFAULT_SHEET_DEFAULTS
    opts = dict(worksheet_data.opts or {})
    layout = SheetOptions.from_defaults(defaults)
    layout.merge(opts)

    cells: List[Cell] = [Cell.from_address(defaults.option_cell, json.dumps(layout.to_dict(), ensure_ascii=False))]
    for col, attr in enumerate(worksheet_data.format, start=1):
        cells.append(Cell(row=layout.attr_line, col=col, value=attr))
    for col, desc in enumerate(worksheet_data.description, start=1):
        cells.append(Cell(row=layout.desc_line, col=col, value=desc))

    descriptors = [parse_attribute(attr) for attr in worksheet_data.format]
    row = layout.data_line
    for data in _iter_export_records(worksheet_data.datas, layout):
        row = _emit_record(cells, descriptors, data, row) + 1

    cells.sort(key=lambda c: (c.row, c.col))
    return CellData(
        max_col=max(c.col for c in cells),
        max_row=max(c.row for c in cells),
        cells=cells,
        name=worksheet_data.name,
        opts=opts,
    )


# =============================================================================
# Sheet splitting
# =============================================================================

_NESTED_ARRAY_RE = re.compile(r"^([^#]+)?#([^#.]+)\..+$")


def describe_attribute(attr: str) -> str:
    """属性の説明（最終区間の名前）。"""
    return parse_attribute(attr).leaf.name


def split_sheet_data(
    name: str,
    ref_keys: Sequence[str],
    formats: Sequence[str],
    datas: List[Any],
    defaults: Optional[SheetDefaults] = None,
) -> List[WorksheetData]:
    """
    配列の配列を含む属性を副シートへ切り出す。

    例: "#list.#list.code" があれば "#list." 配下の属性を
    "<name>.list" シート（type=array, key=list）へ移し、
    先頭に ref_keys ぶんの "__ref_<i>" 列を追加する。
    """
    defaults = defaults or DEFAULT_SHEET_DEFAULTS
    base_opts: Dict[str, Any] = {
        "name": name,
        "ref_keys": list(ref_keys),
        "attr_line": defaults.attr_line,
        "desc_line": defaults.desc_line,
        "data_line": defaults.data_line,
    }
    sheets: Dict[str, WorksheetData] = {name: WorksheetData(name=name, opts=dict(base_opts), format=[], datas=datas)}

    prefixes: List[Tuple[str, str]] = []
    for attr in formats:
        if any(attr.startswith(prefix) for prefix, _ in prefixes):
            continue
        if attr.count("#") < 2:
            continue
        match = _NESTED_ARRAY_RE.match(attr)
        if match:
            head = match.group(1) or ""
            prefixes.append((f"{head}#{match.group(2)}.", f"{head}{match.group(2)}"))

    for attr in formats:
        found = next(((p, k) for p, k in prefixes if attr.startswith(p)), None)
        if found is None:
            sheets[name].format.append(attr)
            sheets[name].description.append(describe_attribute(attr))
            continue
        prefix, key = found
        sheet_name = f"{name}.{key}"
        sub = sheets.get(sheet_name)
        if sub is None:
            sub = WorksheetData(
                name=sheet_name,
                opts={"type": "array", "key": key, **base_opts},
                format=[f"{REF_FIELD}_{i}" for i in range(len(ref_keys))],
                description=list(ref_keys),
                datas=datas,
            )
            sheets[sheet_name] = sub
        rest = attr[len(prefix):]
        sub.format.append(rest)
        sub.description.append(describe_attribute(rest))

    return list(sheets.values())


# =============================================================================
# Schema-to-Format Convertor
# =============================================================================


def _join_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _property_segment(key: str, schema: Mapping[str, Any]) -> str:
    items = schema.get("items")
    if schema.get("type") != "array" or not isinstance(items, Mapping):
        return key
    if items.get("type") == "object":
        return f"#{key}"
    if items.get("type") != "array":
        return f"${key}"
    return key


def _unique(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


def _sort_by_ref_keys(result: List[str], ref_keys: Sequence[str]) -> List[str]:
    def _rank(item: Tuple[int, str]) -> int:
        index, entry = item
        key = _TYPE_SUFFIX_RE.sub("", entry)
        if key in ref_keys:
            return -(len(ref_keys) - list(ref_keys).index(key))
        return index

    return [entry for _, entry in sorted(enumerate(result), key=_rank)]


def _schema_to_format(schema: Mapping[str, Any], ref_keys: Sequence[str], path: str) -> List[str]:
    schema_type = schema.get("type")
    result: List[str] = []
    if schema_type in ("string", "boolean"):
        result.append(f"{path}:{schema_type}")
    elif schema_type in ("number", "integer"):
        result.append(f"{path}:date" if schema.get("format") == "date-time" else f"{path}:number")
    elif schema_type == "object":
        for key, sub in (schema.get("properties") or {}).items():
            result.extend(_schema_to_format(sub, ref_keys, _join_path(path, _property_segment(key, sub))))
        for branch in list(schema.get("allOf") or []) + list(schema.get("oneOf") or []):
            result = _unique(result + _schema_to_format(branch, ref_keys, path))
    elif schema_type == "array":
        items = schema.get("items")
        if not isinstance(items, Mapping):
            raise ConfigurationError(f"items の無い配列スキーマには対応していません: {path or '<root>'}")
        mark = "#" if items.get("type") == "object" else "$"
        result.extend(_schema_to_format(items, ref_keys, path or mark))
    else:
        raise ConfigurationError(f"未対応のスキーマ型です: {schema_type} ({path or '<root>'})")
    return _sort_by_ref_keys(result, ref_keys)


def convert_schema_to_format(schema: Mapping[str, Any], ref_keys: Optional[Sequence[str]] = None) -> List[str]:
    """
    JSONスキーマから属性行の並びを生成する

    例:
        {"type": "object", "properties": {"_id": {"type": "string"},
         "tags": {"type": "array", "items": {"type": "string"}}}}
        -> ["_id:string", "$tags:string"]
    """
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ConfigurationError(f"JSONスキーマが不正です: {e.message}") from e
    keys = list(ref_keys) if ref_keys else list(DEFAULT_SHEET_DEFAULTS.ref_keys)
    return _schema_to_format(schema, keys, "")


# =============================================================================
# Workbook I/O
# =============================================================================


def cell_value_to_text(value: Any) -> Any:
    """openpyxl のセル値をシート API 相当の文字列に揃える。"""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime.datetime):
        return value.strftime(DATE_TEXT_FORMAT)
    if isinstance(value, datetime.date):
        return value.strftime("%Y/%m/%d")
    return to_cell_text(value)


def read_workbook_cells(path: Union[str, Path], sheet_names: Optional[Sequence[str]] = None) -> Dict[str, List[Cell]]:
    """ワークブックの各シートをセルのリストとして読み込む。"""
    try:
        wb = load_workbook(path, data_only=True)
    except (OSError, InvalidFileException, zipfile.BadZipFile) as e:
        raise FileProcessingError(f"ワークブックを開けません: {path} - {e}") from e
    try:
        result: Dict[str, List[Cell]] = {}
        for name in sheet_names or wb.sheetnames:
            if name not in wb.sheetnames:
                logger.warning("シートが見つかりません: %s", name)
                continue
            rows = ([cell_value_to_text(v) for v in row] for row in wb[name].iter_rows(values_only=True))
            result[name] = cells_from_rows(rows)
        return result
    finally:
        wb.close()


def write_workbook_cells(path: Union[str, Path], cell_datas: Sequence[CellData]) -> Path:
    """CellData ごとに 1 シートとして書き出す。シート名やセル値が不正な場合は FileProcessingError。"""
    wb = Workbook()
    wb.remove(wb.active)
    output_path = Path(path)
    try:
        for index, cell_data in enumerate(cell_datas, start=1):
            ws = wb.create_sheet(title=cell_data.name or f"Sheet{index}")
            for cell in cell_data.cells:
                ws.cell(row=cell.row, column=cell.col, value=cell.value)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        wb.save(output_path)
    except (IllegalCharacterError, ValueError, OSError) as e:
        raise FileProcessingError(f"ワークブックを書き出せません: {output_path} - {e}") from e
    return output_path


# =============================================================================
# Output
# =============================================================================


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.isoformat()
    return str(obj)


def write_data(data: Any, output_path: Path, output_format: str = "json") -> None:
    """データをファイルに書き出し（JSON/YAML対応）。"""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        if output_format == "yaml":
            yaml_data = json.loads(json.dumps(data, default=_json_default))
            yaml.safe_dump(yaml_data, f, default_flow_style=False, allow_unicode=True, indent=2, sort_keys=False)
        else:
            json.dump(data, f, ensure_ascii=False, indent=2, default=_json_default)
    logger.debug(f"ファイルの出力に成功しました: {output_path}")


def collect_validation_errors(collection_map: CollectionMap, validator: Draft7Validator) -> List[str]:
    """コレクション内の各レコードをスキーマ検証し、エラーメッセージを返す。"""
    messages: List[str] = []
    for name, collection in collection_map.items():
        for key, record in collection.items():
            for err in sorted(validator.iter_errors(record), key=lambda e: list(e.absolute_path)):
                path = ".".join(str(p) for p in err.absolute_path) or "<root>"
                messages.append(f"[{name}.{key}] {path}: {err.message}")
    return messages


def write_error_log(output_dir: Path, base_name: str, messages: Sequence[str]) -> Optional[Path]:
    if not messages:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    error_log = output_dir / f"{base_name}.error.log"
    with error_log.open("w", encoding="utf-8") as f:
        for message in messages:
            f.write(f"{message}\n")
    return error_log


# =============================================================================
# Application
# =============================================================================


@dataclass(frozen=True)
class CLIConfig:
    """起動時に使用する CLI/派生設定をまとめたコンテナ。"""

    args: Any
    raw_config: Dict[str, Any]
    merged: Dict[str, Any]


@dataclass(frozen=True)
class ProcessingConfig:
    command: str
    input_files: List[Union[str, Path]]
    defaults: SheetDefaults = DEFAULT_SHEET_DEFAULTS
    output_dir: Optional[Path] = None
    output_format: str = "json"
    schema: Optional[Dict[str, Any]] = None
    sheet_names: List[str] = field(default_factory=list)
    name: Optional[str] = None


class SchemaLoader:
    """JSONスキーマの読み込みを行うクラス。"""

    @staticmethod
    def load_schema(schema_path: Optional[Path]) -> Optional[Dict[str, Any]]:
        """指定されたパスからJSONスキーマを読み込む（.yaml/.yml は YAML として読む）"""
        if not schema_path:
            return None
        if not schema_path.is_file():
            raise ConfigurationError(f"スキーマファイルが見つかりません: {schema_path}")
        try:
            with schema_path.open("r", encoding="utf-8") as f:
                if schema_path.suffix.lower() in (".yaml", ".yml"):
                    schema = yaml.safe_load(f)
                else:
                    schema = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"スキーマファイルの形式が不正です: {schema_path} - {e}") from e
        if not isinstance(schema, dict):
            raise ConfigurationError(f"スキーマはオブジェクトで指定してください: {schema_path}")
        return schema


def load_records(path: Path, name: Optional[str] = None) -> List[Record]:
    """
    JSON/YAML ファイルからレコードのリストを読み込む。

    受け付ける形式:
    - レコードのリスト
    - キー -> レコード の辞書
    - コレクション名 -> 上記いずれか（name 指定時）
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise FileProcessingError(f"入力ファイルを読み込めません: {path} - {e}") from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FileProcessingError(f"入力ファイルの形式が不正です: {path} - {e}") from e

    if name and isinstance(data, dict) and name in data:
        data = data[name]
    if isinstance(data, dict):
        data = list(data.values())
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise FileProcessingError(f"レコードのリストを読み取れません: {path}")
    return data


def _collect_files(inputs: Sequence[Union[str, Path]], suffixes: Tuple[str, ...]) -> List[Path]:
    files: List[Path] = []
    for input_item in inputs:
        path = Path(input_item)
        if path.is_file() and path.suffix.lower() in suffixes:
            files.append(path)
        elif path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.suffix.lower() in suffixes))
    return files


class _Converter:
    """ファイル単位の変換を行う共通処理。個別ファイルのエラーは記録して継続する。"""

    suffixes: Tuple[str, ...] = ()

    def __init__(self, config: ProcessingConfig):
        self.config = config
        self.processing_stats = ProcessingStats()

    def process_files(self, input_files: Sequence[Union[str, Path]]) -> int:
        """ファイルリストを処理する"""
        self.processing_stats.start_processing()
        try:
            files = _collect_files(input_files, self.suffixes)
            if not files:
                self.processing_stats.add_warning("処理対象のファイルがありません")
            for path in files:
                try:
                    self._process_single_file(path)
                except (FileProcessingError, ConfigurationError) as e:
                    self.processing_stats.add_error(f"ファイル処理エラー {path}: {e}")
                    logger.error(f"ファイル処理エラー。処理を継続します: {path} - {e}")
        finally:
            self.processing_stats.end_processing()
            self.processing_stats.log_summary()
        return 0

    def _output_dir_for(self, path: Path) -> Path:
        return Path(self.config.output_dir) if self.config.output_dir else path.parent / "output"

    def _process_single_file(self, path: Path) -> None:
        raise NotImplementedError


class Sheet2JsonConverter(_Converter):
    """ワークブックから JSON への変換"""

    suffixes = (".xlsx",)

    def __init__(self, config: ProcessingConfig):
        super().__init__(config)
        self.validator = None
        if config.schema:
            self.validator = Draft7Validator(config.schema, format_checker=FormatChecker())

    def _process_single_file(self, path: Path) -> None:
        logger.debug(f"Processing: {path}")
        sheets = read_workbook_cells(path, self.config.sheet_names or None)
        batch = fold_sheets(sheets, self.config.defaults)
        merged = to_json(batch.results)

        stats = self.processing_stats
        stats.sheets_processed += len(batch.results)
        stats.records_folded += sum(len(s.records) for s in batch.results)

        messages = [f"[{e.name}] シート形式エラー: {e.error}" for e in batch.errors]
        for name, records in merged.errors.items():
            messages.extend(f"[{name}] 連結エラー: {_dump_record(r)}" for r in records)
        if self.validator is not None:
            messages.extend(collect_validation_errors(merged.collection_map, self.validator))
        for message in messages:
            stats.add_error(f"{path.name}: {message}")

        output_dir = self._output_dir_for(path)
        extension = ".yaml" if self.config.output_format == "yaml" else ".json"
        write_data(merged.collection_map, output_dir / f"{path.stem}{extension}", self.config.output_format)
        write_error_log(output_dir, path.stem, messages)


class Json2SheetConverter(_Converter):
    """JSON/YAML のレコードからワークブックへの変換"""

    suffixes = (".json", ".yaml", ".yml")

    def _process_single_file(self, path: Path) -> None:
        name = self.config.name or path.stem
        records = load_records(path, name)
        ref_keys = list(self.config.defaults.ref_keys)
        formats = convert_schema_to_format(self.config.schema, ref_keys)
        sheet_datas = split_sheet_data(name, ref_keys, formats, records, self.config.defaults)
        cell_datas = [to_cells(sheet_data, self.config.defaults) for sheet_data in sheet_datas]
        self.processing_stats.sheets_processed += len(cell_datas)
        self.processing_stats.cells_generated += sum(len(c.cells) for c in cell_datas)
        output_path = write_workbook_cells(self._output_dir_for(path) / f"{path.stem}.xlsx", cell_datas)
        logger.debug(f"ワークブックを出力しました: {output_path}")


def main() -> int:
    """メインエントリーポイント"""
    try:
        parser = create_argument_parser()
        args = parser.parse_args()
    except SystemExit:
        logger.error("引数の解析に失敗しました")
        return 1

    try:
        config = create_config_from_args(args)
        converter_cls = Json2SheetConverter if config.command == "to-xlsx" else Sheet2JsonConverter
        converter = converter_cls(config)
        return converter.process_files(config.input_files)
    except (ConfigurationError, FileProcessingError) as e:
        logger.error(f"エラー: {e}")
        return 1


def create_argument_parser() -> argparse.ArgumentParser:
    """コマンドライン引数パーサーを作成"""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("input_files", nargs="*", help="入力ファイル。ディレクトリ指定時は直下を走査")
    common.add_argument("--config", type=Path, help="設定ファイル（YAML）")
    common.add_argument("--output-dir", "-o", type=Path, help="出力ディレクトリ（未指定時は入力と同じ場所の output/）")
    common.add_argument("--schema", "-s", type=Path, help="JSONスキーマファイル")
    common.add_argument("--option-cell", help="オプションセルの位置（既定: A1）")
    common.add_argument("--attr-line", type=int, help="属性行（既定: 2）")
    common.add_argument("--desc-line", type=int, help="説明行（既定: 3）")
    common.add_argument("--data-line", type=int, help="データ開始行（既定: 4）")
    common.add_argument("--ref-key", action="append", help="参照キー。複数指定可（既定: _id）")
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="ログレベル（デフォルト: INFO）",
    )
    common.add_argument("--log-format", help="ログフォーマット。未指定時は日時付き標準フォーマット")
    common.add_argument("--log-datefmt", help="ログ日時フォーマット。未指定時は '%%Y/%%m/%%d %%H:%%M:%%S'")

    parser = argparse.ArgumentParser(description="属性行を持つシートと JSON を相互変換")
    subparsers = parser.add_subparsers(dest="command", required=True)

    to_json_parser = subparsers.add_parser("to-json", parents=[common], help="ワークブック（.xlsx）を JSON/YAML に変換")
    to_json_parser.add_argument("--sheet", action="append", help="対象シート名。複数指定可（既定: 全シート）")
    to_json_parser.add_argument(
        "--output-format",
        "-f",
        choices=["json", "yaml"],
        default=None,
        help="出力フォーマット (json/yaml)。未指定時は json",
    )

    to_xlsx_parser = subparsers.add_parser("to-xlsx", parents=[common], help="JSON/YAML のレコードをワークブックに変換")
    to_xlsx_parser.add_argument("--name", help="コレクション名（既定: 入力ファイル名）")
    return parser


def create_config_from_args(args) -> ProcessingConfig:
    """コマンドライン引数から設定を作成"""
    raw = _load_config_file_from_args(args)
    merged = _apply_cli_overrides_to_config(args, dict(raw))
    cli_cfg = CLIConfig(args=args, raw_config=raw, merged=merged)

    _configure_logging_from_config(cli_cfg.merged)

    if not cli_cfg.merged.get("input-files"):
        raise ConfigurationError("入力ファイルが指定されていません")

    schema_obj = _load_schema_from_config(cli_cfg.merged)
    return _build_processing_config_from_config(args.command, cli_cfg.merged, schema_obj)


def _load_config_file_from_args(args) -> Dict[str, Any]:
    if not getattr(args, "config", None):
        return {}
    try:
        with args.config.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"設定ファイルの読み込みに失敗（YAML解析エラー）: {e}")
    except (FileNotFoundError, OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"設定ファイルの読み込みに失敗: {e}")
    if loaded is None:
        return {}
    if isinstance(loaded, dict):
        return loaded
    raise ConfigurationError("設定ファイルの形式が不正です（マップ型が必要です）")


def _apply_cli_overrides_to_config(args, cfg: Dict[str, Any]) -> Dict[str, Any]:
    if args.input_files:
        cfg["input-files"] = args.input_files
    if args.output_dir:
        cfg["output-dir"] = args.output_dir
    if args.schema:
        cfg["schema"] = args.schema
    if args.option_cell:
        cfg["option-cell"] = args.option_cell
    if args.attr_line is not None:
        cfg["attr-line"] = args.attr_line
    if args.desc_line is not None:
        cfg["desc-line"] = args.desc_line
    if args.data_line is not None:
        cfg["data-line"] = args.data_line
    if args.ref_key:
        cfg["ref-keys"] = args.ref_key
    if args.log_level:
        cfg["log-level"] = args.log_level
    if args.log_format:
        cfg["log-format"] = args.log_format
    if args.log_datefmt:
        cfg["log-datefmt"] = args.log_datefmt
    if getattr(args, "sheet", None):
        cfg["sheets"] = args.sheet
    if getattr(args, "output_format", None):
        cfg["output-format"] = args.output_format
    if getattr(args, "name", None):
        cfg["name"] = args.name
    return cfg


def _configure_logging_from_config(cfg: Dict[str, Any]) -> None:
    raw_log_level = cfg.get("log-level", "INFO")
    if isinstance(raw_log_level, str):
        log_level = getattr(logging, raw_log_level.upper(), logging.INFO)
    else:
        try:
            log_level = int(raw_log_level)
        except (TypeError, ValueError):
            log_level = logging.INFO
    default_format = "%(asctime)s %(levelname)s: %(message)s"
    default_datefmt = "%Y/%m/%d %H:%M:%S"
    log_format = cfg.get("log-format") or default_format
    datefmt = str(cfg.get("log-datefmt")) if cfg.get("log-datefmt") not in (None, "") else default_datefmt
    logging.basicConfig(level=log_level, format=log_format, datefmt=datefmt)


def _load_schema_from_config(cfg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not cfg.get("schema"):
        return None
    return SchemaLoader.load_schema(Path(cfg["schema"]))


def _build_processing_config_from_config(
    command: str, cfg: Dict[str, Any], schema_obj: Optional[Dict[str, Any]]
) -> ProcessingConfig:
    defaults = SheetDefaults.from_mapping(
        {k: cfg.get(k) for k in ("option-cell", "attr-line", "desc-line", "data-line", "ref-keys", "ref-key")}
    )
    if command == "to-xlsx" and not schema_obj:
        raise ConfigurationError("to-xlsx にはスキーマの指定が必要です")
    output_format = str(cfg.get("output-format") or "json").lower()
    if output_format not in ("json", "yaml"):
        raise ConfigurationError(f"未対応の出力フォーマットです: {output_format}")
    output_dir_val = cfg.get("output-dir")
    sheets = cfg.get("sheets") or []
    if isinstance(sheets, str):
        sheets = [sheets]
    return ProcessingConfig(
        command=command,
        input_files=list(cfg.get("input-files", [])),
        defaults=defaults,
        output_dir=Path(output_dir_val) if output_dir_val is not None else None,
        output_format=output_format,
        schema=schema_obj,
        sheet_names=[str(s) for s in sheets],
        name=cfg.get("name"),
    )


if __name__ == "__main__":
    sys.exit(main())
