import json
import re
from pathlib import Path

from PIL import Image, UnidentifiedImageError

# Text chunks that carry JSON graphs rather than prompt text.
JSON_CHUNK_KEYS = {"prompt", "workflow", "prompt_json", "workflow_json"}

_NEGATIVE_MARKER = "Negative prompt:"
_params_line_re = re.compile(r"^\s*Steps:\s*\d+", re.MULTILINE)
_kv_re = re.compile(r"\s*([\w ]+?):\s*(\"[^\"]*\"|[^,]*)(?:,|$)")


def try_parse_json(value):
    if value is None:
        return None

    if isinstance(value, (dict, list)):
        return value

    if isinstance(value, bytes):
        for enc in ("utf-8", "utf-8-sig", "latin-1"):
            try:
                value = value.decode(enc)
                break
            except UnicodeDecodeError:
                pass
        if isinstance(value, bytes):
            return None

    if isinstance(value, str):
        s = value.strip()
        if not s or s[0] not in "{[":
            return None
        try:
            return json.loads(s)
        except ValueError:
            return None

    return None


def _coerce_number(text):
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def parse_generation_parameters(text):
    """Split an A1111-style ``parameters`` chunk into prompt, negative and settings.

    >>> parse_generation_parameters("a cat\\nNegative prompt: blurry\\nSteps: 20, Seed: 7")["seed"]
    7
    """
    result = {"prompt": "", "negative_prompt": "", "settings": {}, "seed": None}
    if not text:
        return result

    body = text
    settings_line = ""
    matches = list(_params_line_re.finditer(text))
    if matches:
        m = matches[-1]
        body = text[: m.start()]
        settings_line = text[m.start() :].strip()

    if _NEGATIVE_MARKER in body:
        positive, negative = body.split(_NEGATIVE_MARKER, 1)
    else:
        positive, negative = body, ""
    result["prompt"] = positive.strip()
    result["negative_prompt"] = negative.strip()

    for key, value in _kv_re.findall(settings_line):
        key = key.strip()
        if not key:
            continue
        result["settings"][key] = _coerce_number(value.strip().strip('"'))

    seed = result["settings"].get("Seed")
    if isinstance(seed, int):
        result["seed"] = seed
    return result


def read_image_info(image_path):
    """Dimensions and any generation data embedded in an image file.

    Returns ``None`` when the file cannot be decoded as an image.
    """
    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(image_path)

    try:
        with Image.open(image_path) as img:
            info = dict(getattr(img, "info", {}) or {})
            width, height = img.size
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        return None

    result = {
        "format": fmt,
        "width": width,
        "height": height,
        "prompt": None,
        "negative_prompt": None,
        "seed": None,
        "parameters": None,
    }

    embedded = {}
    for k, v in info.items():
        key = str(k).strip()
        if key.lower() in JSON_CHUNK_KEYS:
            parsed = try_parse_json(v)
            if parsed is not None:
                embedded[key] = parsed
            elif key.lower() == "prompt" and isinstance(v, str) and v.strip():
                result["prompt"] = v.strip()

    raw_params = info.get("parameters")
    if isinstance(raw_params, str) and raw_params.strip():
        gen = parse_generation_parameters(raw_params)
        result["prompt"] = result["prompt"] or gen["prompt"] or None
        result["negative_prompt"] = gen["negative_prompt"] or None
        result["seed"] = gen["seed"]
        if gen["settings"]:
            embedded["settings"] = gen["settings"]

    if embedded:
        result["parameters"] = embedded
    return result
