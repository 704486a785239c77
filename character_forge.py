import json
import logging
import os
import secrets
import threading
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Set, Tuple

from flask import Flask, Response, jsonify, render_template_string, request, session

from forge_state import BUSY_CAPTIONS, Action, CharacterForge
from gemini_service import GeminiService, call_gemini_text

APP_TITLE = "Fantasy Character Forge"
APP_TAGLINE = "Summon a hero from the digital ether, complete with their own legend."
DATA_DIR = Path(__file__).resolve().parent / "data"
SETTINGS_PATH = DATA_DIR / "settings.json"

DEFAULT_SETTINGS = {
    "api_key": "",
    "base_url": "https://generativelanguage.googleapis.com/v1beta",
    "text_model": "gemini-2.5-flash",
    "image_model": "gemini-2.5-flash-image",
    "temperature": 0.9,
    "timeout": 90,
}

MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0
MIN_TIMEOUT = 5
MAX_TIMEOUT = 600
MAX_FORGES = 256

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get("FORGE_SECRET_KEY", "") or secrets.token_hex(32)
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
)

# Process-local, one orchestrator per browser session.
FORGES: "OrderedDict[str, CharacterForge]" = OrderedDict()
# Forges claimed by an action request; guarded by FORGES_LOCK together with FORGES.
RUNNING_FORGES: Set[str] = set()
FORGES_LOCK = threading.RLock()


def ensure_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        logger.warning("Could not read %s, using defaults", path, exc_info=True)
        return default


def save_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def clamp_settings_values(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        temperature = float(settings.get("temperature", DEFAULT_SETTINGS["temperature"]))
    except Exception:
        temperature = DEFAULT_SETTINGS["temperature"]
    temperature = max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, temperature))

    try:
        timeout = int(settings.get("timeout", DEFAULT_SETTINGS["timeout"]))
    except Exception:
        timeout = DEFAULT_SETTINGS["timeout"]
    timeout = max(MIN_TIMEOUT, min(MAX_TIMEOUT, timeout))

    return {
        "api_key": str(settings.get("api_key", "") or "").strip(),
        "base_url": str(settings.get("base_url", "") or "").strip() or DEFAULT_SETTINGS["base_url"],
        "text_model": str(settings.get("text_model", "") or "").strip() or DEFAULT_SETTINGS["text_model"],
        "image_model": str(settings.get("image_model", "") or "").strip() or DEFAULT_SETTINGS["image_model"],
        "temperature": temperature,
        "timeout": timeout,
    }


def load_settings() -> Dict[str, Any]:
    stored = load_json(SETTINGS_PATH, DEFAULT_SETTINGS.copy())
    merged = DEFAULT_SETTINGS.copy()
    if isinstance(stored, dict):
        merged.update({k: v for k, v in stored.items() if v is not None})
    settings = clamp_settings_values(merged)
    if not settings["api_key"]:
        settings["api_key"] = (os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY") or "").strip()
    return settings


def save_settings(settings: Dict[str, Any]) -> None:
    ensure_dirs()
    save_json(SETTINGS_PATH, settings)


def public_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    visible = {k: v for k, v in settings.items() if k != "api_key"}
    visible["has_api_key"] = bool(settings.get("api_key"))
    return visible


def build_service() -> GeminiService:
    return GeminiService(load_settings())


def session_forge() -> Tuple[str, CharacterForge]:
    """Return this session's forge id and forge, creating one when needed.

    Forges are created without a service; the action route attaches a fresh
    one built from the current settings before every run.
    """
    with FORGES_LOCK:
        forge_id = str(session.get("forge_id", "") or "")
        forge = FORGES.get(forge_id)
        if forge is not None:
            FORGES.move_to_end(forge_id)
            return forge_id, forge
        forge_id = uuid.uuid4().hex
        forge = CharacterForge(None)
        FORGES[forge_id] = forge
        while len(FORGES) > MAX_FORGES:
            FORGES.popitem(last=False)
        session["forge_id"] = forge_id
        return forge_id, forge


def current_forge() -> CharacterForge:
    return session_forge()[1]


@app.before_request
def prepare_request() -> None:
    ensure_dirs()


@app.route("/")
def index():
    forge = current_forge()
    snapshot = forge.snapshot()
    return render_template_string(
        TEMPLATE,
        app_title=APP_TITLE,
        app_tagline=APP_TAGLINE,
        view=forge.view(),
        snapshot=snapshot,
        actions=[action.value for action in Action],
        busy_captions={action.value: caption for action, caption in BUSY_CAPTIONS.items()},
        settings=public_settings(load_settings()),
    )


@app.route("/state")
def state_route():
    return jsonify(current_forge().snapshot())


@app.route("/character/<action>", methods=["POST"])
async def character_action_route(action: str):
    try:
        selected = Action(action)
    except ValueError:
        return jsonify({"error": f"Unknown action: {action}"}), 404
    service = build_service()
    with FORGES_LOCK:
        forge_id, forge = session_forge()
        if forge_id in RUNNING_FORGES or forge.is_any_action_in_progress:
            return jsonify({"error": "Another action is still running.", "state": forge.snapshot()}), 409
        RUNNING_FORGES.add(forge_id)
        forge.service = service
    try:
        await forge.run(selected)
    finally:
        with FORGES_LOCK:
            RUNNING_FORGES.discard(forge_id)
    return jsonify(forge.snapshot())


@app.route("/character/export")
def export_character_route():
    character = current_forge().character
    if character is None:
        return jsonify({"error": "No character to export yet."}), 404
    fmt = str(request.args.get("format", "txt")).strip().lower()
    safe_name = "".join(c for c in character.name if c.isalnum() or c in {"-", "_", " "}).strip()
    safe_name = (safe_name or "character").replace(" ", "_")
    if fmt == "json":
        payload = json.dumps(character.to_dict(), indent=2, ensure_ascii=False)
        return Response(
            payload,
            mimetype="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_name}.json"'},
        )
    return Response(
        character.to_text(),
        mimetype="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{safe_name}.txt"'},
    )


@app.route("/settings", methods=["GET"])
def get_settings_route():
    return jsonify({"ok": True, "settings": public_settings(load_settings())})


@app.route("/settings", methods=["POST"])
def save_settings_route():
    payload = request.get_json(silent=True) or {}
    stored = load_json(SETTINGS_PATH, {})
    settings = DEFAULT_SETTINGS.copy()
    if isinstance(stored, dict):
        settings.update({k: v for k, v in stored.items() if k in DEFAULT_SETTINGS})
    updates = {k: v for k, v in payload.items() if k in DEFAULT_SETTINGS}
    # A blank key in the form means "keep the saved one".
    if not str(updates.get("api_key", "") or "").strip():
        updates.pop("api_key", None)
    settings.update(updates)
    settings = clamp_settings_values(settings)
    save_settings(settings)
    return jsonify({"ok": True, "settings": public_settings(load_settings())})


@app.route("/settings/test", methods=["POST"])
def test_settings_route():
    payload = request.get_json(silent=True) or {}
    settings = load_settings()
    settings.update({k: v for k, v in payload.items() if k in DEFAULT_SETTINGS and v not in (None, "")})
    test_settings = clamp_settings_values(settings)
    test_settings["temperature"] = 0.0
    try:
        result = call_gemini_text(test_settings, "Reply with exactly: hi")
    except Exception as exc:
        logger.warning("Settings test failed: %s", exc)
        return jsonify({"ok": False, "error": str(exc)}), 400
    return jsonify({"ok": True, "model": test_settings["text_model"], "preview": result.strip()[:120]})


TEMPLATE = r"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{{ app_title }}</title>
  <link rel="preconnect" href="https://fonts.googleapis.com" />
  <link rel="preconnect" href="https://fonts.gstatic.com" crossorigin />
  <link href="https://fonts.googleapis.com/css2?family=Cinzel:wght@600;700&family=Manrope:wght@400;500;700&display=swap" rel="stylesheet" />
  <style>
    :root {
      --bg: #100c07;
      --bg-2: #1b130a;
      --ink: #fdf6e3;
      --muted: #c9b27c;
      --accent: #f5b83d;
      --accent-2: #fcd34d;
      --card: rgba(28, 20, 12, 0.94);
      --border: rgba(245, 184, 61, 0.22);
      --danger: #f87171;
      --danger-bg: rgba(127, 29, 29, 0.45);
      --radius: 16px;
    }
    * { box-sizing: border-box; }
    body {
      margin: 0;
      min-height: 100vh;
      display: flex;
      flex-direction: column;
      align-items: center;
      font-family: "Manrope", "Segoe UI", system-ui, sans-serif;
      color: var(--ink);
      background: radial-gradient(900px circle at 20% 0%, rgba(245, 184, 61, 0.12), transparent 40%),
                  radial-gradient(900px circle at 85% 10%, rgba(252, 211, 77, 0.08), transparent 45%),
                  linear-gradient(135deg, var(--bg), var(--bg-2));
      padding: 24px 16px;
    }
    header { text-align: center; margin-bottom: 28px; }
    h1 {
      margin: 0;
      font-family: "Cinzel", serif;
      font-size: clamp(32px, 6vw, 56px);
      background: linear-gradient(90deg, #fcd34d, #eab308, #fbbf24);
      -webkit-background-clip: text;
      background-clip: text;
      color: transparent;
    }
    header p { margin: 14px 0 0; color: var(--muted); font-size: 18px; }
    .actions { display: flex; flex-wrap: wrap; justify-content: center; gap: 14px; margin-bottom: 28px; }
    .btn {
      min-width: 150px;
      border: 0;
      border-radius: 999px;
      padding: 12px 22px;
      font-weight: 700;
      font-size: 16px;
      cursor: pointer;
      background: linear-gradient(120deg, var(--accent), var(--accent-2));
      color: #1b1206;
      box-shadow: 0 10px 24px rgba(0, 0, 0, 0.35);
    }
    .btn[disabled] { opacity: 0.5; cursor: default; }
    .btn.ghost { background: transparent; color: var(--muted); border: 1px solid var(--border); min-width: 0; }
    .stage {
      width: min(460px, 100%);
      min-height: 28rem;
      display: flex;
      align-items: center;
      justify-content: center;
    }
    .busy { display: flex; flex-direction: column; align-items: center; color: var(--accent-2); }
    .spinner {
      width: 64px;
      height: 64px;
      border-radius: 50%;
      border-top: 2px solid var(--accent);
      border-bottom: 2px solid var(--accent);
      animation: spin 1s linear infinite;
    }
    @keyframes spin { to { transform: rotate(360deg); } }
    .busy p { margin-top: 16px; font-size: 18px; }
    .error {
      display: flex;
      gap: 14px;
      align-items: center;
      padding: 16px 22px;
      border: 1px solid var(--danger);
      border-radius: 12px;
      background: var(--danger-bg);
      color: #fecaca;
    }
    .error .icon { font-size: 28px; color: var(--danger); }
    .empty {
      text-align: center;
      padding: 32px;
      border: 2px dashed var(--border);
      border-radius: 20px;
      color: var(--muted);
      font-size: 20px;
    }
    .card {
      width: 100%;
      background: var(--card);
      border: 1px solid var(--border);
      border-radius: var(--radius);
      overflow: hidden;
      box-shadow: 0 20px 40px rgba(0, 0, 0, 0.45);
    }
    .card img { width: 100%; aspect-ratio: 1 / 1; object-fit: cover; display: block; background: #000; }
    .card .body { padding: 18px 20px 22px; }
    .card h2 { margin: 0; font-family: "Cinzel", serif; font-size: 28px; color: var(--accent-2); }
    .card .class { margin: 4px 0 14px; color: var(--muted); text-transform: uppercase; letter-spacing: 0.08em; font-size: 13px; }
    .stat { display: grid; grid-template-columns: 80px 1fr 36px; gap: 10px; align-items: center; font-size: 13px; margin-bottom: 6px; }
    .bar { height: 8px; border-radius: 999px; background: rgba(255, 255, 255, 0.08); overflow: hidden; }
    .bar span { display: block; height: 100%; background: linear-gradient(90deg, var(--accent), var(--accent-2)); }
    .card .description { margin: 14px 0 0; line-height: 1.55; }
    .card .backstory { margin-top: 16px; padding-top: 14px; border-top: 1px solid var(--border); line-height: 1.6; white-space: pre-wrap; }
    .card .backstory h3 { margin: 0 0 8px; font-family: "Cinzel", serif; color: var(--accent); font-size: 16px; }
    .exports { display: flex; gap: 8px; margin-top: 16px; }
    .exports a { color: var(--muted); font-size: 13px; }
    details.settings {
      width: min(460px, 100%);
      margin-top: 28px;
      border: 1px solid var(--border);
      border-radius: 12px;
      padding: 12px 16px;
      color: var(--muted);
    }
    details.settings summary { cursor: pointer; }
    details.settings label { display: block; font-size: 12px; text-transform: uppercase; letter-spacing: 0.06em; margin: 10px 0 4px; }
    details.settings input {
      width: 100%;
      border: 1px solid var(--border);
      background: rgba(0, 0, 0, 0.3);
      color: var(--ink);
      border-radius: 8px;
      padding: 8px 10px;
    }
    .settings-row { display: flex; gap: 8px; margin-top: 12px; align-items: center; }
    .status { font-size: 13px; }
    footer { margin-top: auto; padding-top: 32px; color: #6b7280; font-size: 14px; }
  </style>
</head>
<body>
  <header>
    <h1>{{ app_title }}</h1>
    <p>{{ app_tagline }}</p>
  </header>

  <main>
    <div class="actions">
      {% for action in actions %}
      <button class="btn" type="button" id="btn_{{ action }}" data-action="{{ action }}"
              {% if snapshot.buttons[action].disabled %}disabled{% endif %}>{{ snapshot.buttons[action].label }}</button>
      {% endfor %}
    </div>

    <div class="stage" id="stage">
      {% if view.kind.value == 'busy' %}
        <div class="busy"><div class="spinner"></div><p>{{ view.caption }}</p></div>
      {% elif view.kind.value == 'error' %}
        <div class="error"><span class="icon">&#9888;</span><p>{{ view.error }}</p></div>
      {% elif view.kind.value == 'character' %}
        {% set c = view.character %}
        <div class="card">
          <img src="{{ c.image_url }}" alt="Portrait of {{ c.name }}" />
          <div class="body">
            <h2>{{ c.name }}</h2>
            <div class="class">{{ c.character_class }}</div>
            {% for stat, value in c.stats.items() %}
            <div class="stat"><span>{{ stat|title }}</span><div class="bar"><span style="width: {{ value }}%"></span></div><span>{{ value }}</span></div>
            {% endfor %}
            <p class="description">{{ c.description }}</p>
            {% if c.has_backstory %}
            <div class="backstory"><h3>Backstory</h3>{{ c.backstory }}</div>
            {% endif %}
            <div class="exports">
              <a href="/character/export?format=txt">Export TXT</a>
              <a href="/character/export?format=json">Export JSON</a>
            </div>
          </div>
        </div>
      {% else %}
        <div class="empty"><p>{{ view.caption }}</p></div>
      {% endif %}
    </div>
  </main>

  <details class="settings">
    <summary>AI settings{% if not settings.has_api_key %} (API key required){% endif %}</summary>
    <label for="set_api_key">Gemini API key</label>
    <input id="set_api_key" type="password" placeholder="{{ 'Saved' if settings.has_api_key else 'Paste your key' }}" />
    <label for="set_text_model">Text model</label>
    <input id="set_text_model" value="{{ settings.text_model }}" />
    <label for="set_image_model">Image model</label>
    <input id="set_image_model" value="{{ settings.image_model }}" />
    <label for="set_temperature">Temperature</label>
    <input id="set_temperature" type="number" step="0.1" min="0" max="2" value="{{ settings.temperature }}" />
    <div class="settings-row">
      <button class="btn ghost" type="button" onclick="saveSettings()">Save</button>
      <button class="btn ghost" type="button" onclick="testSettings()">Test</button>
      <span class="status" id="settings_status"></span>
    </div>
  </details>

  <footer><p>Powered by Gemini AI</p></footer>

  <script>
    const BUSY_CAPTIONS = {{ busy_captions|tojson }};
    const BUSY_LABELS = { generate: 'Summoning...', cartoonify: 'Animating...', backstory: 'Writing...' };
    const stageEl = document.getElementById('stage');
    const settingsStatusEl = document.getElementById('settings_status');

    function el(tag, className, text) {
      const node = document.createElement(tag);
      if (className) node.className = className;
      if (text !== undefined && text !== null) node.textContent = text;
      return node;
    }

    function renderBusy(caption) {
      const wrap = el('div', 'busy');
      wrap.appendChild(el('div', 'spinner'));
      wrap.appendChild(el('p', '', caption));
      stageEl.replaceChildren(wrap);
    }

    function renderCharacter(character) {
      const card = el('div', 'card');
      const img = el('img');
      img.src = character.image_url;
      img.alt = `Portrait of ${character.name}`;
      card.appendChild(img);
      const body = el('div', 'body');
      body.appendChild(el('h2', '', character.name));
      body.appendChild(el('div', 'class', character['class']));
      ['health', 'strength', 'mana', 'agility'].forEach((stat) => {
        const row = el('div', 'stat');
        row.appendChild(el('span', '', stat.charAt(0).toUpperCase() + stat.slice(1)));
        const bar = el('div', 'bar');
        const fill = el('span');
        fill.style.width = `${Math.max(0, Math.min(100, Number(character[stat]) || 0))}%`;
        bar.appendChild(fill);
        row.appendChild(bar);
        row.appendChild(el('span', '', String(character[stat])));
        body.appendChild(row);
      });
      body.appendChild(el('p', 'description', character.description));
      if (character.backstory) {
        const story = el('div', 'backstory');
        story.appendChild(el('h3', '', 'Backstory'));
        story.appendChild(document.createTextNode(character.backstory));
        body.appendChild(story);
      }
      const exports = el('div', 'exports');
      [['txt', 'Export TXT'], ['json', 'Export JSON']].forEach(([fmt, label]) => {
        const link = el('a', '', label);
        link.href = `/character/export?format=${fmt}`;
        exports.appendChild(link);
      });
      body.appendChild(exports);
      card.appendChild(body);
      stageEl.replaceChildren(card);
    }

    function renderState(state) {
      if (state.view === 'busy') {
        renderBusy(state.caption);
      } else if (state.view === 'error') {
        const box = el('div', 'error');
        box.appendChild(el('span', 'icon', '⚠'));
        box.appendChild(el('p', '', state.error));
        stageEl.replaceChildren(box);
      } else if (state.view === 'character') {
        renderCharacter(state.character);
      } else {
        const empty = el('div', 'empty');
        empty.appendChild(el('p', '', state.caption));
        stageEl.replaceChildren(empty);
      }
      Object.entries(state.buttons || {}).forEach(([action, info]) => {
        const button = document.getElementById(`btn_${action}`);
        if (!button) return;
        button.textContent = info.label;
        button.disabled = Boolean(info.disabled);
      });
    }

    function setBusy(action) {
      document.querySelectorAll('.actions .btn').forEach((button) => {
        button.disabled = true;
        if (button.dataset.action === action) button.textContent = BUSY_LABELS[action];
      });
      renderBusy(BUSY_CAPTIONS[action]);
    }

    async function runAction(action) {
      setBusy(action);
      let data = null;
      try {
        const res = await fetch(`/character/${action}`, { method: 'POST' });
        data = await res.json();
        if (!res.ok) {
          data = data.state || null;
        }
      } catch (err) {
        console.error(err);
      }
      if (!data) {
        const res = await fetch('/state');
        data = await res.json();
      }
      renderState(data);
    }

    function collectSettings() {
      return {
        api_key: document.getElementById('set_api_key').value,
        text_model: document.getElementById('set_text_model').value,
        image_model: document.getElementById('set_image_model').value,
        temperature: Number(document.getElementById('set_temperature').value),
      };
    }

    async function saveSettings() {
      settingsStatusEl.textContent = 'Saving...';
      const res = await fetch('/settings', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify(collectSettings()),
      });
      const data = await res.json();
      if (!res.ok) {
        settingsStatusEl.textContent = data.error || 'Settings save failed.';
        return;
      }
      document.getElementById('set_api_key').value = '';
      document.getElementById('set_api_key').placeholder = data.settings.has_api_key ? 'Saved' : 'Paste your key';
      settingsStatusEl.textContent = 'Settings saved.';
    }

    async function testSettings() {
      settingsStatusEl.textContent = 'Testing...';
      const res = await fetch('/settings/test', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify(collectSettings()),
      });
      const data = await res.json();
      settingsStatusEl.textContent = res.ok ? `Connected (${data.model}): ${data.preview}` : (data.error || 'Test failed.');
    }

    document.querySelectorAll('.actions .btn').forEach((button) => {
      button.addEventListener('click', () => runAction(button.dataset.action));
    });
  </script>
</body>
</html>
"""


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("FORGE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ensure_dirs()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8934")), debug=False)


if __name__ == "__main__":
    main()
