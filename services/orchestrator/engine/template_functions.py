"""Built-in functions callable from `{{func:name(args)}}` templates."""

import base64
import binascii
import logging
import random
import re
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List
from urllib.parse import quote, unquote
from shared.exceptions import ExpressionError
from shared.utils import is_number, to_text
from services.orchestrator.engine.path_evaluator import default_evaluator

TemplateFunction = Callable[..., Any]

_function_registry: Dict[str, TemplateFunction] = {}

_DATE_TOKEN_RE = re.compile(r"YYYY|MM|DD|HH|mm|ss")

# Characters encodeURIComponent leaves alone
_URL_SAFE_CHARACTERS = "-_.!~*'()"


def register_function(name: str):
    """Decorator to register a template function"""
    def decorator(func: TemplateFunction):
        _function_registry[name] = func
        return func
    return decorator


def get_template_functions() -> Dict[str, TemplateFunction]:
    return dict(_function_registry)


def list_function_names() -> List[str]:
    return sorted(_function_registry)


def _number_arg(args: tuple, index: int, default: Any) -> Any:
    if len(args) > index and is_number(args[index]):
        return args[index]
    return default


def _iso_utc(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def format_date(moment: datetime, pattern: str) -> str:
    tokens = {
        "YYYY": f"{moment.year:04d}",
        "MM": f"{moment.month:02d}",
        "DD": f"{moment.day:02d}",
        "HH": f"{moment.hour:02d}",
        "mm": f"{moment.minute:02d}",
        "ss": f"{moment.second:02d}",
    }
    return _DATE_TOKEN_RE.sub(lambda match: tokens[match.group(0)], pattern)


@register_function("jsonPath")
def json_path(data: Any = None, path: Any = "$", *args: Any) -> Any:
    try:
        return default_evaluator.evaluate(to_text(path), data)
    except ExpressionError as e:
        logging.warning("jsonPath template function failed", extra={"path": path, "error": str(e)})
        return None


@register_function("uuid")
def generate_uuid(*args: Any) -> str:
    return str(uuid.uuid4())


@register_function("timestamp")
def timestamp(*args: Any) -> int:
    return int(time.time() * 1000)


@register_function("isoDate")
def iso_date(*args: Any) -> str:
    return _iso_utc(datetime.now(timezone.utc))


@register_function("dateFormat")
def date_format(*args: Any) -> str:
    """Local date shifted by a day offset, rendered with YYYY MM DD HH mm ss tokens"""
    day_offset = _number_arg(args, 0, 0)
    pattern = args[1] if len(args) > 1 and isinstance(args[1], str) else "YYYY-MM-DD"
    return format_date(datetime.now() + timedelta(days=day_offset), pattern)


@register_function("dateISO")
def date_iso(*args: Any) -> str:
    moment = datetime.now(timezone.utc) + timedelta(days=_number_arg(args, 0, 0))
    return moment.strftime("%Y-%m-%d")


@register_function("dateRFC3339")
def date_rfc3339(*args: Any) -> str:
    return _iso_utc(datetime.now(timezone.utc) + timedelta(days=_number_arg(args, 0, 0)))


@register_function("randomInt")
def random_int(*args: Any) -> int:
    low = int(_number_arg(args, 0, 0))
    high = int(_number_arg(args, 1, 100))
    if low > high:
        low, high = high, low
    return random.randint(low, high)


@register_function("randomString")
def random_string(*args: Any) -> str:
    length = max(int(_number_arg(args, 0, 10)), 0)
    alphabet = string.ascii_letters + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


@register_function("base64Encode")
def base64_encode(value: Any = "", *args: Any) -> str:
    return base64.b64encode(to_text(value).encode("utf-8")).decode("ascii")


@register_function("base64Decode")
def base64_decode(value: Any = "", *args: Any) -> str:
    try:
        return base64.b64decode(to_text(value), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logging.error("base64Decode received invalid input", extra={"error": str(e)})
        return ""


@register_function("urlEncode")
def url_encode(value: Any = "", *args: Any) -> str:
    return quote(to_text(value), safe=_URL_SAFE_CHARACTERS)


@register_function("urlDecode")
def url_decode(value: Any = "", *args: Any) -> str:
    return unquote(to_text(value))
