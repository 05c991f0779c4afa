import json

from asset_orchestrator import config
from asset_orchestrator.config import PipelineSettings, _load_rules, load_settings
from asset_shared.schemas import JobKind


class TestRules:
    def test_missing_file_is_empty(self, tmp_path):
        assert _load_rules(str(tmp_path / "nope.json")) == {}

    def test_unreadable_file_is_empty(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        assert _load_rules(str(path)) == {}


class TestLoadSettings:
    def test_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.json"))
        assert settings.timeout_for(JobKind.MESH_REFINE) == config.MESH_TIMEOUT_SECONDS
        assert settings.timeout_for(JobKind.RETEXTURE) == config.RETEXTURE_TIMEOUT_SECONDS
        assert settings.retry_for(JobKind.RIG).max_attempts == config.RETRY_MAX_ATTEMPTS
        assert settings.poll_interval == config.POLL_INTERVAL_SECONDS

    def test_stage_overrides(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"stages": {
            "mesh-refine": {"timeout_seconds": 420, "retry_max": 2},
            "rig": {"retry_max": 0},
            "teleport": {"retry_max": 9},
        }}))
        settings = load_settings(str(path))
        assert settings.timeout_for(JobKind.MESH_REFINE) == 420.0
        assert settings.retry_for(JobKind.MESH_REFINE).max_attempts == 3
        assert settings.retry_for(JobKind.RIG).max_attempts == 1
        # backoff shape is shared
        assert settings.retry_for(JobKind.RIG).base_delay == settings.retry.base_delay
        assert settings.timeout_for(JobKind.MESH_PREVIEW) == config.MESH_TIMEOUT_SECONDS

    def test_non_object_stage_keeps_defaults(self, tmp_path, caplog):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"stages": {"mesh-refine": 5, "rig": {"retry_max": 1}}}))
        settings = load_settings(str(path))
        assert settings.timeout_for(JobKind.MESH_REFINE) == config.MESH_TIMEOUT_SECONDS
        assert settings.retry_for(JobKind.MESH_REFINE).max_attempts == config.RETRY_MAX_ATTEMPTS
        assert settings.retry_for(JobKind.RIG).max_attempts == 2
        assert "mesh-refine" in caplog.text

    def test_non_numeric_values_keep_defaults(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"stages": {
            "mesh-refine": {"timeout_seconds": "slow", "retry_max": [2]},
            "mesh-preview": {"timeout_seconds": None, "retry_max": "2"},
            "retexture": {"timeout_seconds": -1},
        }}))
        settings = load_settings(str(path))
        assert settings.timeout_for(JobKind.MESH_REFINE) == config.MESH_TIMEOUT_SECONDS
        assert settings.retry_for(JobKind.MESH_REFINE).max_attempts == config.RETRY_MAX_ATTEMPTS
        assert settings.timeout_for(JobKind.MESH_PREVIEW) == config.MESH_TIMEOUT_SECONDS
        # numeric strings are accepted
        assert settings.retry_for(JobKind.MESH_PREVIEW).max_attempts == 3
        assert settings.timeout_for(JobKind.RETEXTURE) == config.RETEXTURE_TIMEOUT_SECONDS

    def test_stages_not_an_object(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"stages": ["mesh-refine"]}))
        assert load_settings(str(path)).stage_attempts == {}


class TestPipelineSettings:
    def test_timeout_fallback(self):
        settings = PipelineSettings(stage_timeouts={})
        assert settings.timeout_for(JobKind.RETEXTURE) == config.RETEXTURE_TIMEOUT_SECONDS
        assert settings.timeout_for(JobKind.IMAGE_TO_MESH) == config.MESH_TIMEOUT_SECONDS
