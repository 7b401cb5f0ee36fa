"""
Media Server Config Generator - Pure Functions

Turns a RelayConfig into nginx-rtmp configuration text.
Same input = byte-identical output, no side effects.

Layout:
- one ingest application on the listen port, open to any publisher
  (the ingest listener is a local trust boundary, not a security control)
- per enabled platform: a push from the ingest application to an internal
  application that only accepts publish from loopback and execs the
  transcoder towards the platform ingest URL

Stream keys are untrusted. Every transcoder argument that is not a plain
token is double quoted and escaped twice: once for the nginx-rtmp `exec`
evaluator (backslash escapes, `$variables`) and once for the nginx parser
(backslash, double quote). A key can therefore never end the directive,
open or close a block, start a comment or expand a variable.
"""

import re
from typing import List, NamedTuple, Tuple

from .errors import InvalidStreamKey, UnsupportedPlatformError
from .model import EncodeProfile, PlatformCredential, RelayConfig, has_control_chars

INDENT = "    "
LOOPBACK = "127.0.0.1"
CHUNK_SIZE = 4096
WORKER_CONNECTIONS = 1024

# Tokens that need no quoting in either grammar
PLAIN_TOKEN_RE = re.compile(r"^[A-Za-z0-9_./:@%+=,-]+$")


# =============================================================================
# QUOTING
# =============================================================================

def escape_exec_argument(value: str) -> str:
    """Escape for the nginx-rtmp exec evaluator (backslash and `$`)."""
    return value.replace("\\", "\\\\").replace("$", "\\$")


def quote_nginx_string(value: str) -> str:
    """Wrap in double quotes for the nginx config parser."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def exec_argument(value: str, force_quote: bool = False) -> str:
    """
    Render one transcoder argument for an `exec` directive.

    The transcoder receives `value` unchanged in its argv.
    """
    if has_control_chars(value):
        raise InvalidStreamKey("transcoder arguments must not contain control characters")
    if not force_quote and PLAIN_TOKEN_RE.match(value):
        return value
    return quote_nginx_string(escape_exec_argument(value))


# =============================================================================
# GENERATION
# =============================================================================

def internal_url(config: RelayConfig, application: str) -> str:
    return f"rtmp://{LOOPBACK}:{config.listen_port}/{application}"


def transcoder_arguments(profile: EncodeProfile) -> List[List[str]]:
    """Encode profile as argument groups, one output line per group."""
    video = f"{profile.video_bitrate_kbps}k"
    return [
        ["-c:v", "libx264", "-preset", profile.preset, "-tune", profile.tuning],
        ["-b:v", video, "-maxrate", video, "-bufsize", video],
        ["-pix_fmt", profile.pixel_format, "-g", str(profile.keyframe_interval), "-r", str(profile.framerate)],
        ["-c:a", "aac", "-b:a", f"{profile.audio_bitrate_kbps}k",
         "-ar", str(profile.audio_sample_rate), "-ac", str(profile.audio_channels)],
    ]


def _header(config: RelayConfig) -> List[str]:
    lines = [
        "# Generated by stream_relay - overwritten on every start",
        "worker_processes 1;",
        "daemon off;",
    ]
    if config.runtime_dir:
        runtime = config.runtime_dir.rstrip("/\\")
        lines.append(f"pid {quote_nginx_string(runtime + '/nginx.pid')};")
        lines.append(f"error_log {quote_nginx_string(runtime + '/error.log')} info;")
    lines += [
        "",
        "events {",
        f"{INDENT}worker_connections {WORKER_CONNECTIONS};",
        "}",
        "",
    ]
    return lines


def _enabled(config: RelayConfig) -> List[PlatformCredential]:
    return sorted((c for c in config.credentials if c.enabled), key=lambda c: c.platform.order)


def _ingest_application(config: RelayConfig) -> List[str]:
    pad = INDENT * 2
    lines = [
        f"{pad}application {config.application_name} {{",
        f"{pad}{INDENT}live on;",
        f"{pad}{INDENT}record off;",
        f"{pad}{INDENT}allow publish all;",
        f"{pad}{INDENT}allow play all;",
        "",
    ]
    for cred in _enabled(config):
        lines.append(f"{pad}{INDENT}push {internal_url(config, cred.platform.value)};")
    lines.append(f"{pad}}}")
    return lines


def _platform_application(config: RelayConfig, cred: PlatformCredential) -> List[str]:
    target = config.targets.get(cred.platform)
    if target is None:
        raise UnsupportedPlatformError(f"no ingest target known for {cred.platform.label}")

    pad = INDENT * 2
    inner = pad + INDENT
    cont = inner + INDENT
    app = cred.platform.value
    source = f"{internal_url(config, app)}/$name"

    lines = [
        f"{pad}application {app} {{",
        f"{inner}live on;",
        f"{inner}record off;",
        f"{inner}allow publish {LOOPBACK};",
        f"{inner}deny publish all;",
        "",
        f"{inner}exec {exec_argument(config.transcoder)} -i {source}",
    ]
    for group in transcoder_arguments(target.profile):
        lines.append(cont + " ".join(exec_argument(arg) for arg in group))
    if target.profile.extra_args:
        lines.append(cont + " ".join(exec_argument(arg) for arg in target.profile.extra_args))

    destination = exec_argument(target.ingest_url + cred.stream_key, force_quote=True)
    lines.append(f"{cont}-f flv {destination};")
    lines.append(f"{pad}}}")
    return lines


def generate_config(config: RelayConfig) -> str:
    """
    Generate the media server configuration for a relay.

    Args:
        config: Relay configuration (credentials already validated)

    Returns:
        Configuration text, identical for identical input

    Raises:
        UnsupportedPlatformError: a credential has no ingest target
        InvalidStreamKey: a key contains control characters
    """
    credentials = _enabled(config)
    for cred in credentials:
        cred.validate()

    lines = _header(config)
    lines += [
        "rtmp {",
        f"{INDENT}server {{",
        f"{INDENT * 2}listen {config.listen_port};",
        f"{INDENT * 2}chunk_size {CHUNK_SIZE};",
        "",
    ]
    lines += _ingest_application(config)
    for cred in credentials:
        lines.append("")
        lines += _platform_application(config, cred)
    lines += [
        f"{INDENT}}}",
        "}",
    ]
    return "\n".join(lines) + "\n"


# =============================================================================
# SCANNING (nginx grammar, for sanity checks and tests)
# =============================================================================

class Block(NamedTuple):
    depth: int
    words: Tuple[str, ...]


class Directive(NamedTuple):
    depth: int
    words: Tuple[str, ...]


_NGINX_ESCAPES = {'"': '"', "'": "'", "\\": "\\", "t": "\t", "r": "\r", "n": "\n"}


def scan_config(text: str) -> Tuple[List[Block], List[Directive]]:
    """
    Tokenize config text the way the nginx parser does.

    Returns every opened block and every `;` terminated directive with its
    nesting depth. Quoted words come back unquoted.

    Raises:
        ValueError: unbalanced braces or an unterminated quoted string
    """
    blocks: List[Block] = []
    directives: List[Directive] = []
    words: List[str] = []
    word: List[str] = []
    depth = 0
    quote = None
    in_word = False
    i = 0

    def flush():
        nonlocal word, in_word
        if in_word:
            words.append("".join(word))
        word = []
        in_word = False

    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\" and i + 1 < len(text):
                nxt = text[i + 1]
                if nxt in _NGINX_ESCAPES:
                    word.append(_NGINX_ESCAPES[nxt])
                else:
                    word.append(ch + nxt)
                i += 2
                continue
            if ch == quote:
                quote = None
                flush()
            else:
                word.append(ch)
            i += 1
            continue

        if ch in "\"'" and not in_word:
            quote = ch
            in_word = True
        elif ch == "#" and not in_word:
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
            continue
        elif ch.isspace() or ch in ";{}":
            flush()
            if ch == ";":
                directives.append(Directive(depth, tuple(words)))
                words = []
            elif ch == "{":
                blocks.append(Block(depth, tuple(words)))
                depth += 1
                words = []
            elif ch == "}":
                if words:
                    raise ValueError("directive not terminated before '}'")
                depth -= 1
                if depth < 0:
                    raise ValueError("unbalanced '}'")
        else:
            word.append(ch)
            in_word = True
        i += 1

    if quote:
        raise ValueError("unterminated quoted string")
    if depth:
        raise ValueError("unbalanced '{'")
    if words or in_word:
        raise ValueError("trailing directive not terminated")
    return blocks, directives


def eval_exec_argument(word: str) -> str:
    """
    Undo the exec evaluator escaping for one word.

    Raises ValueError when the word would expand a `$variable`.
    """
    out = []
    i = 0
    while i < len(word):
        ch = word[i]
        if ch == "\\" and i + 1 < len(word):
            out.append(word[i + 1])
            i += 2
            continue
        if ch == "$":
            raise ValueError("argument expands a variable")
        out.append(ch)
        i += 1
    return "".join(out)
