from types import SimpleNamespace

import httpx
import openai
import pytest

from prontivus import openai_client as oc
from prontivus import prompts
from prontivus.config import get_settings

MESSAGES = [{'role': 'user', 'content': 'Paciente com febre há dois dias'}]


def fake_client(content=None, tokens=42, error=None):
    def create(**kwargs):
        fake_client.calls.append(kwargs)
        if error is not None:
            raise error
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=SimpleNamespace(total_tokens=tokens))

    fake_client.calls = []
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.fixture()
def online(monkeypatch):
    monkeypatch.delenv('USE_OFFLINE_MODEL', raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    oc.reset_client()
    get_settings.cache_clear()


def test_offline_reply_is_deterministic(monkeypatch):
    monkeypatch.setenv('USE_OFFLINE_MODEL', 'true')
    get_settings.cache_clear()
    assert get_settings().use_offline_model is True
    assert oc.call_openai(MESSAGES) == oc.call_openai(MESSAGES)
    assert oc.call_openai(MESSAGES).startswith('Offline response (')
    payload, tokens = oc.call_openai_json(MESSAGES)
    assert payload['cid_codes'][0]['code'] == 'Z00.0'
    assert tokens == len(MESSAGES[0]['content']) // 4


def test_json_mode_request(online):
    online.setattr(oc, '_get_client', lambda: fake_client('{"anamnesis": "ok"}', tokens=120))
    payload, tokens = oc.call_openai_json(MESSAGES, temperature=0.3, max_tokens=2000)
    assert payload == {'anamnesis': 'ok'}
    assert tokens == 120
    call = fake_client.calls[0]
    assert call['response_format'] == {'type': 'json_object'}
    assert call['max_tokens'] == 2000
    assert call['model'] == 'gpt-4o-mini'


def test_malformed_json_raises(online):
    online.setattr(oc, '_get_client', lambda: fake_client('not json'))
    with pytest.raises(oc.AIServiceError):
        oc.call_openai_json(MESSAGES)
    online.setattr(oc, '_get_client', lambda: fake_client('[1, 2]'))
    with pytest.raises(oc.AIServiceError):
        oc.call_openai_json(MESSAGES)


def test_empty_reply_raises(online):
    online.setattr(oc, '_get_client', lambda: fake_client(''))
    with pytest.raises(oc.AIServiceError):
        oc.call_openai(MESSAGES)


def test_connection_error_maps_to_503(online):
    error = openai.APIConnectionError(request=httpx.Request('POST', 'https://api.openai.com/v1/chat/completions'))
    online.setattr(oc, '_get_client', lambda: fake_client(error=error))
    with pytest.raises(oc.AIServiceError) as excinfo:
        oc.call_openai(MESSAGES)
    assert excinfo.value.status_code == 503


def test_missing_key(online):
    online.delenv('OPENAI_API_KEY', raising=False)
    get_settings.cache_clear()
    oc.reset_client()
    try:
        with pytest.raises(oc.AIServiceError):
            oc.call_openai(MESSAGES)
    finally:
        get_settings.cache_clear()


def test_analysis_prompt_includes_context():
    messages = prompts.build_analysis_prompt('  médico: Bom dia  ', 'Gestante')
    assert messages[0]['role'] == 'system'
    assert 'médico: Bom dia' in messages[1]['content']
    assert 'Gestante' in messages[1]['content']
    assert 'Contexto adicional' not in prompts.build_analysis_prompt('texto')[1]['content']


def test_format_transcript_skips_blank_segments():
    text = prompts.format_transcript([{'text': 'Bom dia', 'speaker': 'médico'}, {'text': '  '}, {'text': 'Oi'}])
    assert text == 'médico: Bom dia\nOi'
