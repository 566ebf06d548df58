#!/usr/bin/env python3
"""ccstatusline — Claude Code statusline with Mustache templates.

Reads the statusLine JSON payload from stdin and renders one line through a
user template:

  {{modelName}} | {{shortCwd}}{{#gitBranch}} ({{gitBranch}}){{/gitBranch}}

Template syntax:
  {{name}}                 variable (never HTML-escaped), dotted names allowed
  {{#name}}...{{/name}}    section: skipped when falsy, repeated for lists
  {{^name}}...{{/name}}    inverted section
  {{color:red,bold:text}}  inline ANSI color (text is literal)
  {{tokenCount}} {{tokenCountRaw}} {{tokenCountColored}}
  {{compactionPercentage}} {{compactionPercentageColored}}
                           token usage from the session transcript

Resolution order: token functions, then color directives, then variables.

Config:       ~/.claude/ccstatusline.toml (optional)
"""

import sys, json, os, re, math, select, subprocess, argparse, logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from types import MappingProxyType

__version__ = "1.0.0"

log = logging.getLogger("ccstatusline")

# ═══════════════════════ CONFIG ═══════════════════════

DEFAULT_TEMPLATE = "{{modelName}} | {{shortCwd}}{{#gitBranch}} ({{gitBranch}}){{/gitBranch}}"
TEMPLATE = DEFAULT_TEMPLATE
CONFIG_PATH = Path("~/.claude/ccstatusline.toml")

CONTEXT_WINDOW = 200_000
COMPACTION_RATIO = 0.8
COMPACTION_THRESHOLD = int(CONTEXT_WINDOW * COMPACTION_RATIO)  # 160k, auto-compact point
WARN_PCT = 70
DANGER_PCT = 90

STDIN_TIMEOUT = 0.1              # sec to wait for a writer before assuming no input
GIT_LOOKUP = True                # query git when the payload has no "git" object
GIT_TIMEOUT = 5
GIT_MAX_OUTPUT = 10 * 1024 * 1024

def load_config(path=None):
    """Load optional TOML config, override defaults."""
    global TEMPLATE, CONTEXT_WINDOW, COMPACTION_RATIO, COMPACTION_THRESHOLD
    global STDIN_TIMEOUT, GIT_LOOKUP, GIT_TIMEOUT

    cfg_path = Path(path or os.environ.get("CCSTATUSLINE_CONFIG") or CONFIG_PATH).expanduser()
    if not cfg_path.exists():
        return

    try:
        import tomllib
        with open(cfg_path, "rb") as f:
            cfg = tomllib.load(f)
    except (OSError, ValueError) as e:
        log.debug("Ignoring config %s: %s", cfg_path, e)
        return

    d = cfg.get("display", {})
    TEMPLATE = d.get("template", TEMPLATE)

    t = cfg.get("tokens", {})
    CONTEXT_WINDOW = t.get("context_window", CONTEXT_WINDOW)
    COMPACTION_RATIO = t.get("compaction_ratio", COMPACTION_RATIO)
    COMPACTION_THRESHOLD = t.get("compaction_threshold", int(CONTEXT_WINDOW * COMPACTION_RATIO))

    g = cfg.get("git", {})
    GIT_LOOKUP = g.get("enabled", GIT_LOOKUP)
    GIT_TIMEOUT = g.get("timeout", GIT_TIMEOUT)

    i = cfg.get("input", {})
    STDIN_TIMEOUT = i.get("stdin_timeout", STDIN_TIMEOUT)

load_config()

# ═══════════════════════ ANSI ═══════════════════════

RESET = "\033[0m"

COLORS = MappingProxyType({
    # Regular
    "black": "\033[30m", "red": "\033[31m", "green": "\033[32m", "yellow": "\033[33m",
    "blue": "\033[34m", "magenta": "\033[35m", "cyan": "\033[36m", "white": "\033[37m",
    # Bright
    "brightBlack": "\033[90m", "brightRed": "\033[91m", "brightGreen": "\033[92m",
    "brightYellow": "\033[93m", "brightBlue": "\033[94m", "brightMagenta": "\033[95m",
    "brightCyan": "\033[96m", "brightWhite": "\033[97m",
    # Background
    "bgBlack": "\033[40m", "bgRed": "\033[41m", "bgGreen": "\033[42m", "bgYellow": "\033[43m",
    "bgBlue": "\033[44m", "bgMagenta": "\033[45m", "bgCyan": "\033[46m", "bgWhite": "\033[47m",
    # Styles
    "bold": "\033[1m", "dim": "\033[2m", "italic": "\033[3m", "underline": "\033[4m",
    "blink": "\033[5m", "reverse": "\033[7m", "hidden": "\033[8m", "strikethrough": "\033[9m",
})

OK, WARN, DANGER = COLORS["green"], COLORS["yellow"], COLORS["red"]

ANSI_RE = re.compile(r"\033\[[0-9;]*m")

def color_code(spec):
    """Escape prefix for a comma-separated style list like "red,bold". Unknown names add nothing."""
    code = ""
    for part in spec.split(","):
        part = part.strip()
        # Exact first so camelCase names (bgRed) match, then lowercase ("RED", "Bold")
        c = COLORS.get(part) or COLORS.get(part.lower())
        if c:
            code += c
    return code

def strip_ansi(txt):
    return ANSI_RE.sub("", txt)

# ═══════════════════════ FORMATTERS ═══════════════════════

def fmt_cost(usd):
    """Format cost: $0.0234; zero/missing is $0.00."""
    if not usd:
        return "$0.00"
    return f"${usd:.4f}"

def fixed1(x):
    """One decimal place, ties rounded away from zero (1.25 -> "1.3")."""
    return str(Decimal(x).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))

def fmt_dur(ms):
    """Format duration: 1.5s under a minute, else 2m5s."""
    if not ms:
        return "0s"
    s = ms / 1000
    if s < 60:
        return f"{fixed1(s)}s"
    return f"{int(s // 60)}m{int(s % 60)}s"

def shorten_path(path, home):
    """Replace a leading home directory with ~."""
    home = (home or "").rstrip("/")
    if not home or not path:
        return path
    if path == home or path.startswith(home + "/"):
        return "~" + path[len(home):]
    return path

def fmt_tok(t):
    """Format tokens: 999, 125.0K, 1.5M."""
    if t >= 1_000_000:
        return f"{fixed1(t / 1_000_000)}M"
    if t >= 1000:
        return f"{fixed1(t / 1000)}K"
    return str(t)

def compaction_pct(tokens, threshold=None):
    """Percent of the auto-compact threshold used, rounded half-up, clamped to 0-100."""
    threshold = threshold or COMPACTION_THRESHOLD
    pct = math.floor(tokens * 100 / threshold + 0.5)
    return max(0, min(100, pct))

def compaction_color(pct):
    """Colorize by compaction pressure: green <70, yellow 70-89, red >=90."""
    if pct >= DANGER_PCT: return DANGER
    if pct >= WARN_PCT: return WARN
    return OK

def time_fields(now=None):
    """timestamp (UTC ISO, ms), date (M/D/YYYY), time (H:MM:SS AM) in local time."""
    now = now or datetime.now().astimezone()
    utc = now.astimezone(timezone.utc)
    hour = now.hour % 12 or 12
    return {
        "timestamp": utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z",
        "date": f"{now.month}/{now.day}/{now.year}",
        "time": f"{hour}:{now.minute:02d}:{now.second:02d} {'AM' if now.hour < 12 else 'PM'}",
    }

# ═══════════════════════ TRANSCRIPT ═══════════════════════

USAGE_KEYS = ("input_tokens", "output_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")

def _usage_total(usage):
    total = 0
    for k in USAGE_KEYS:
        v = usage.get(k)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            total += int(v)
    return total

def read_token_total(path):
    """Tokens of the last assistant turn in a JSONL transcript. 0 when unavailable."""
    if not isinstance(path, str) or not path or not os.path.exists(path):
        return 0

    try:
        # Undecodable bytes become U+FFFD so only the damaged line fails to parse
        lines = Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        log.warning("Error reading transcript: %s", e)
        return 0

    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            rec = json.loads(line)
        except ValueError:
            continue
        if not isinstance(rec, dict):
            continue
        msg = rec.get("message")
        if not isinstance(msg, dict):
            continue
        if rec.get("type") != "assistant" and msg.get("role") != "assistant":
            continue
        usage = msg.get("usage")
        if not isinstance(usage, dict):
            continue
        return _usage_total(usage)
    return 0

class TokenLookup:
    """Token total for one render. The transcript is read at most once."""

    def __init__(self, path, reader=None):
        self.path = path or ""
        self.reader = reader
        self.reads = 0
        self._total = None

    def total(self):
        if self._total is None:
            if not self.path:
                self._total = 0
            else:
                self.reads += 1
                self._total = (self.reader or read_token_total)(self.path)
        return self._total

# ═══════════════════════ TEMPLATE ═══════════════════════

class TemplateError(ValueError):
    """Unbalanced section tags."""

def _fn_token_count(tok):
    return fmt_tok(tok.total())

def _fn_token_count_raw(tok):
    return tok.total()

def _fn_compaction_pct(tok):
    return compaction_pct(tok.total())

def _fn_compaction_pct_colored(tok):
    pct = compaction_pct(tok.total())
    return f"{compaction_color(pct)}{pct}%{RESET}"

def _fn_token_count_colored(tok):
    t = tok.total()
    return f"{compaction_color(compaction_pct(t))}{fmt_tok(t)}{RESET}"

# Evaluation order is fixed
TEMPLATE_FUNCTIONS = (
    ("tokenCount", _fn_token_count),
    ("tokenCountRaw", _fn_token_count_raw),
    ("compactionPercentage", _fn_compaction_pct),
    ("compactionPercentageColored", _fn_compaction_pct_colored),
    ("tokenCountColored", _fn_token_count_colored),
)

COLOR_RE = re.compile(r"\{\{color:([^:]+):([^}]+)\}\}")

# {{{name}}} first, then {{<sigil> name}}
TAG_RE = re.compile(r"\{\{\{\s*(.+?)\s*\}\}\}|\{\{\s*([#^/!&>=]?)\s*(.*?)\s*\}\}", re.S)

def needs_functions(template):
    return any("{{%s}}" % name in template for name, _ in TEMPLATE_FUNCTIONS)

def resolve_functions(template, tokens):
    """Replace every token-function placeholder with its value. Each runs once."""
    for name, fn in TEMPLATE_FUNCTIONS:
        placeholder = "{{%s}}" % name
        if placeholder in template:
            template = template.replace(placeholder, str(fn(tokens)))
    return template

def apply_colors(template):
    """Expand {{color:spec:text}} into escape + text + reset. Single pass, no nesting."""
    def sub(m):
        code = color_code(m.group(1))
        return f"{code}{m.group(2)}{RESET}" if code else m.group(2)
    return COLOR_RE.sub(sub, template)

def parse_template(template):
    """Parse into a node list: str | ("var", name) | ("section", name, children, inverted)."""
    root = []
    stack = [(None, root, False, 0)]
    pos = 0
    for m in TAG_RE.finditer(template):
        if m.start() > pos:
            stack[-1][1].append(template[pos:m.start()])
        pos = m.end()

        if m.group(1) is not None:
            stack[-1][1].append(("var", m.group(1)))
            continue

        sigil, name = m.group(2), m.group(3)
        if sigil in ("#", "^"):
            children = []
            stack[-1][1].append(("section", name, children, sigil == "^"))
            stack.append((name, children, sigil == "^", m.start()))
        elif sigil == "/":
            if len(stack) == 1:
                raise TemplateError(f'Unopened section "{name}" at {m.start()}')
            open_name = stack[-1][0]
            if open_name != name:
                raise TemplateError(f'Unclosed section "{open_name}" at {m.start()}')
            stack.pop()
        elif sigil in ("!", ">", "="):
            # Comments are dropped; partials and delimiter changes are unsupported
            continue
        else:
            stack[-1][1].append(("var", name))

    if len(stack) > 1:
        name, _, _, start = stack[-1]
        raise TemplateError(f'Unclosed section "{name}" at {start}')
    if pos < len(template):
        root.append(template[pos:])
    return root

def _lookup(stack, name):
    """Resolve a (dotted) name against the context stack, innermost first."""
    if name == ".":
        return stack[-1]
    head, *rest = name.split(".")
    for frame in reversed(stack):
        if isinstance(frame, dict) and head in frame:
            value = frame[head]
            break
    else:
        return None
    for part in rest:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value

def _falsy(v):
    if isinstance(v, (list, tuple)):
        return not v
    if isinstance(v, dict):
        return False
    return not v

def _stringify(v):
    if v is None or v is False:
        return ""
    if v is True:
        return "true"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    if isinstance(v, (list, tuple)):
        return ",".join(_stringify(x) for x in v)
    if isinstance(v, dict):
        return json.dumps(v)
    return str(v)

def _render_nodes(nodes, stack, out):
    for node in nodes:
        if isinstance(node, str):
            out.append(node)
        elif node[0] == "var":
            out.append(_stringify(_lookup(stack, node[1])))
        else:
            _, name, children, inverted = node
            value = _lookup(stack, name)
            if inverted:
                if _falsy(value):
                    _render_nodes(children, stack, out)
            elif _falsy(value):
                continue
            elif isinstance(value, (list, tuple)):
                for item in value:
                    _render_nodes(children, stack + [item], out)
            else:
                _render_nodes(children, stack + [value], out)

def render_mustache(template, ctx):
    """Mustache substitution without HTML escaping. Unknown names render empty."""
    out = []
    _render_nodes(parse_template(template), [ctx], out)
    return "".join(out)

def render_static(template, ctx):
    """Render a template that uses no token functions: colors, then variables."""
    return render_mustache(apply_colors(template), ctx)

def render_template(template, ctx, tokens=None):
    """Full render: token functions, colors, variables."""
    if needs_functions(template):
        tokens = tokens or TokenLookup(ctx.get("transcriptPath", ""))
        template = resolve_functions(template, tokens)
    return render_static(template, ctx)

# ═══════════════════════ GIT ═══════════════════════

def _git_output(args, cwd=None):
    """Raw stdout of a git command, or None on any failure.

    Output is fully captured before GIT_MAX_OUTPUT is checked, so the limit
    rejects oversized output rather than bounding how much is read.
    """
    try:
        r = subprocess.run(
            ["git", *args], cwd=cwd or None,
            capture_output=True, text=True, timeout=GIT_TIMEOUT)
    except (OSError, subprocess.SubprocessError) as e:
        log.debug("git %s failed: %s", " ".join(args), e)
        return None
    if r.returncode != 0 or len(r.stdout) > GIT_MAX_OUTPUT:
        return None
    return r.stdout

def git_run(args, cwd=None):
    """Run git, return stripped stdout or "" on any failure."""
    out = _git_output(args, cwd)
    return "" if out is None else out.rstrip()

def porcelain(cwd=None):
    """Non-blank lines of git status --porcelain, or None on failure."""
    out = _git_output(["--no-optional-locks", "status", "--porcelain"], cwd)
    if out is None:
        return None
    return [l for l in out.splitlines() if l.strip()]

def status_summary(lines):
    """Summary like "1 staged, 2 modified"; "clean" when nothing changed."""
    if lines is None:
        return ""
    if not lines:
        return "clean"
    staged = sum(1 for l in lines if l[0] in "MADRC")
    modified = sum(1 for l in lines if l[:2] in (" M", "M "))
    untracked = sum(1 for l in lines if l.startswith("??"))
    deleted = sum(1 for l in lines if l[:2] in (" D", "D "))
    parts = [f"{n} {label}" for n, label in (
        (staged, "staged"), (modified, "modified"),
        (untracked, "untracked"), (deleted, "deleted")) if n]
    return ", ".join(parts) or "changes"

def status_short(lines):
    """One-char indicator: ✓ clean, ● staged, ✱ modified, … untracked, ○ other."""
    if lines is None:
        return ""
    if not lines:
        return "✓"
    if any(l[0] in "MADRC" for l in lines): return "●"
    if any(l[:2] in (" M", "M ") for l in lines): return "✱"
    if any(l.startswith("??") for l in lines): return "…"
    return "○"

def git_branch(cwd=None):
    return git_run(["rev-parse", "--abbrev-ref", "HEAD"], cwd)

def git_status(cwd=None):
    return status_summary(porcelain(cwd))

def git_status_short(cwd=None):
    return status_short(porcelain(cwd))

def git_info(cwd=None):
    """(branch, status, short status) with a single git status call."""
    lines = porcelain(cwd)
    return git_branch(cwd), status_summary(lines), status_short(lines)

# ═══════════════════════ INPUT ═══════════════════════

def read_stdin(timeout=None, stream=None):
    """Read all of stdin. Returns "{}" if nothing arrives within timeout."""
    stream = stream or sys.stdin
    timeout = STDIN_TIMEOUT if timeout is None else timeout
    try:
        ready, _, _ = select.select([stream], [], [], timeout)
    except (OSError, ValueError, TypeError):
        # No usable fd (StringIO, closed stream): read whatever is there
        ready = [stream]
    if not ready:
        return "{}"
    return stream.read()

def parse_input(text):
    if not text.strip():
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data

def _obj(data, key):
    v = data.get(key)
    return v if isinstance(v, dict) else {}

def _str(data, key):
    v = data.get(key)
    return v if isinstance(v, str) else ""

def process_input(data, home=None, git_lookup=None, now=None):
    """Build the render context: raw input plus derived display fields."""
    home = os.environ.get("HOME", "") if home is None else home
    model, ws, cost = _obj(data, "model"), _obj(data, "workspace"), _obj(data, "cost")

    cwd = data.get("cwd") or ws.get("current_dir") or os.getcwd()
    project = ws.get("project_dir") or cwd

    if "git" in data or git_lookup is None:
        git = _obj(data, "git")
        branch, status, short = git.get("branch") or "", git.get("status") or "", ""
    else:
        branch, status, short = git_lookup(cwd)

    added = cost.get("total_lines_added") or 0
    removed = cost.get("total_lines_removed") or 0

    ctx = dict(data)
    ctx.update({
        "processedCwd": cwd,
        "shortCwd": shorten_path(cwd, home),
        "projectDir": project,
        "shortProjectDir": shorten_path(project, home),

        "modelName": model.get("display_name") or "Unknown",
        "modelId": model.get("id") or "unknown",

        "gitBranch": branch,
        "gitStatus": status,
        "gitStatusShort": short,

        **time_fields(now),

        "totalCostUsd": fmt_cost(cost.get("total_cost_usd")),
        "totalDurationSec": fmt_dur(cost.get("total_duration_ms")),
        "totalApiDurationSec": fmt_dur(cost.get("total_api_duration_ms")),
        "totalLinesAdded": added,
        "totalLinesRemoved": removed,
        "totalLinesChanged": added + removed,

        "hookEventName": data.get("hook_event_name") or "",
        "sessionId": data.get("session_id") or "",
        "transcriptPath": _str(data, "transcript_path"),
        "version": data.get("version") or "",
        "outputStyleName": _obj(data, "output_style").get("name") or "",
    })
    return ctx

# ═══════════════════════ MAIN ═══════════════════════

def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="ccstatusline",
        description="Claude Code statusline with Mustache template support")
    p.add_argument("-t", "--template", help="Mustache template string")
    p.add_argument("--no-color", action="store_true", help="Disable ANSI colors")
    p.add_argument("-d", "--debug", action="store_true", help="Debug mode - show input data")
    p.add_argument("-c", "--config", help="Config file (default: %s)" % CONFIG_PATH)
    p.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)

def setup_logging(debug=False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s", stream=sys.stderr, force=True)

def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.debug)
    if args.config:
        load_config(args.config)

    try:
        data = parse_input(read_stdin())
        if args.debug:
            log.debug("Input data:\n%s", json.dumps(data, indent=2))

        ctx = process_input(data, git_lookup=git_info if GIT_LOOKUP else None)
        line = render_template(args.template or TEMPLATE, ctx)
    except Exception as e:
        log.error("Error: %s", e)
        return 1

    if args.no_color or os.environ.get("NO_COLOR"):
        line = strip_ansi(line)
    print(line)
    return 0

if __name__ == "__main__":
    sys.exit(main())
