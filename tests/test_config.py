from dataclasses import replace

import pytest

from neomem.utils.config import ConfigError, load_config, validate_config


def test_defaults(monkeypatch):
    for name in ('NEO4J_DATABASE', 'SLEEP_PARETO_PERCENTILE', 'EXTRACTION_ENABLED', 'MEMORY_CAPTURE_ASSISTANT'):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()

    assert cfg.neo4j.database == 'neo4j'
    assert cfg.sleep_cycle.pareto_percentile == 0.2
    assert cfg.extraction.enabled is True
    assert cfg.capture.capture_assistant is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('BEDROCK_EMBED_DIMENSION', '512')
    monkeypatch.setenv('EXTRACTION_ENABLED', 'off')
    monkeypatch.setenv('SLEEP_RETRY_FAILED_EXTRACTIONS', 'yes')

    cfg = load_config()

    assert cfg.bedrock_embed.dimension == 512
    assert cfg.extraction.enabled is False
    assert cfg.sleep_cycle.retry_failed_extractions is True


def test_complete_config_validates(app_config):
    validate_config(app_config)


def test_missing_settings_are_listed(app_config):
    bad = replace(app_config, neo4j=replace(app_config.neo4j, uri='', password=''))

    with pytest.raises(ConfigError) as exc_info:
        validate_config(bad)

    assert 'NEO4J_URI' in str(exc_info.value)
    assert 'NEO4J_PASSWORD' in str(exc_info.value)


@pytest.mark.parametrize('section,field,value', [
    ('bedrock_embed', 'dimension', 0),
    ('sleep_cycle', 'pareto_percentile', 0.0),
    ('sleep_cycle', 'pareto_percentile', 1.5),
])
def test_out_of_range_values_are_rejected(app_config, section, field, value):
    bad = replace(app_config, **{section: replace(getattr(app_config, section), **{field: value})})

    with pytest.raises(ConfigError):
        validate_config(bad)
