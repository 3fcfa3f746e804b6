from __future__ import annotations

from wellness_agent.prompt_loader import SYSTEM_PROMPT_FILE, load_prompt, render_prompt


def test_load_prompt_strips_bom(tmp_path):
    path = tmp_path / "prompt.md"
    path.write_bytes("\ufeffHalo $state".encode("utf-8"))
    assert load_prompt(path) == "Halo $state"


def test_render_prompt_keeps_unknown_placeholders():
    assert render_prompt("Tahap: $state, produk: $unknown\n", {"state": "sapaan awal"}) == (
        "Tahap: sapaan awal, produk: $unknown"
    )


def test_system_prompt_has_every_section(settings):
    template = load_prompt(settings.prompts_dir / SYSTEM_PROMPT_FILE)
    for placeholder in ("$state", "$health_summary", "$recommendations", "$order_summary"):
        assert placeholder in template
