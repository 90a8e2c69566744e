from __future__ import annotations

from typing import Any

import pytest

from reloader.src.config import RELOAD_STRATEGY_ANNOTATIONS, AnnotationKeys, ReloaderOptions
from reloader.src.hashing import EMPTY_DATA_FINGERPRINT
from reloader.src.kube import JSON_PATCH, STRATEGIC_MERGE_PATCH
from reloader.src.resources import CONFIGMAP, SECRET, Config
from reloader.src.strategies import (
    ReloadResult,
    convert_to_env_var_name,
    env_var_name,
    invoke_delete_strategy,
    invoke_reload_strategy,
)
from reloader.src.workloads import CRON_JOB, DEPLOYMENT

KEYS = AnnotationKeys()


def make_config(sha_value: str = "sha-1", name: str = "cm1") -> Config:
    return Config(
        namespace="apps",
        resource_name=name,
        resource_type=CONFIGMAP,
        sha_value=sha_value,
        annotation=KEYS.configmap_reload,
        typed_auto_annotation=KEYS.configmap_auto,
    )


def make_deployment(env: list[dict[str, str]] | None = None) -> dict[str, Any]:
    main: dict[str, Any] = {"name": "app", "envFrom": [{"configMapRef": {"name": "cm1"}}]}
    if env is not None:
        main["env"] = env
    return {
        "metadata": {"name": "web", "namespace": "apps"},
        "spec": {"template": {"spec": {"containers": [{"name": "sidecar"}, main]}}},
    }


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("www.stakater.com", "WWW_STAKATER_COM"),
        ("cm1", "CM1"),
        ("my-config--map", "MY_CONFIG_MAP"),
        ("-leading", "LEADING"),
    ],
)
def test_convert_to_env_var_name(text: str, expected: str) -> None:
    assert convert_to_env_var_name(text) == expected


def test_env_var_name() -> None:
    assert env_var_name("cm1", CONFIGMAP) == "STAKATER_CM1_CONFIGMAP"
    assert env_var_name("db-creds", SECRET) == "STAKATER_DB_CREDS_SECRET"


class TestEnvVarStrategy:
    def setup_method(self) -> None:
        self.options = ReloaderOptions()

    def _env(self, item: dict[str, Any]) -> list[dict[str, str]]:
        return item["spec"]["template"]["spec"]["containers"][1]["env"]

    def test_adds_env_var_to_referencing_container(self) -> None:
        item = make_deployment()

        outcome = invoke_reload_strategy(DEPLOYMENT, item, make_config(), True, self.options)

        assert outcome.result is ReloadResult.UPDATED
        assert self._env(item) == [{"name": "STAKATER_CM1_CONFIGMAP", "value": "sha-1"}]
        assert "env" not in item["spec"]["template"]["spec"]["containers"][0]
        assert outcome.patch is not None
        assert outcome.patch.patch_type == STRATEGIC_MERGE_PATCH
        patched = outcome.patch.body["spec"]["template"]["spec"]["containers"][0]
        assert patched == {
            "name": "app",
            "env": [{"name": "STAKATER_CM1_CONFIGMAP", "value": "sha-1"}],
        }

    def test_same_value_is_not_updated_again(self) -> None:
        item = make_deployment()
        config = make_config()

        first = invoke_reload_strategy(DEPLOYMENT, item, config, True, self.options)
        second = invoke_reload_strategy(DEPLOYMENT, item, config, True, self.options)

        assert first.result is ReloadResult.UPDATED
        assert second.result is ReloadResult.NOT_UPDATED
        assert len(self._env(item)) == 1

    def test_changed_value_overwrites_existing_env_var(self) -> None:
        item = make_deployment(env=[{"name": "STAKATER_CM1_CONFIGMAP", "value": "old"}])

        outcome = invoke_reload_strategy(DEPLOYMENT, item, make_config("new"), True, self.options)

        assert outcome.result is ReloadResult.UPDATED
        assert self._env(item) == [{"name": "STAKATER_CM1_CONFIGMAP", "value": "new"}]

    def test_null_env_list_is_replaced(self) -> None:
        item = make_deployment()
        item["spec"]["template"]["spec"]["containers"][1]["env"] = None

        outcome = invoke_reload_strategy(DEPLOYMENT, item, make_config(), True, self.options)

        assert outcome.result is ReloadResult.UPDATED
        assert self._env(item) == [{"name": "STAKATER_CM1_CONFIGMAP", "value": "sha-1"}]

    def test_no_container_found_in_auto_mode(self) -> None:
        item = make_deployment()

        outcome = invoke_reload_strategy(
            DEPLOYMENT, item, make_config(name="unused"), True, self.options
        )

        assert outcome.result is ReloadResult.NO_CONTAINER_FOUND

    def test_unpatchable_kind_gets_no_patch(self) -> None:
        item = {
            "metadata": {"name": "nightly"},
            "spec": {
                "jobTemplate": {
                    "spec": {"template": {"spec": {"containers": [{"name": "job"}]}}}
                }
            },
        }

        outcome = invoke_reload_strategy(CRON_JOB, item, make_config(), False, self.options)

        assert outcome.result is ReloadResult.UPDATED
        assert outcome.patch is None
        env = CRON_JOB.containers(item)[0]["env"]
        assert env == [{"name": "STAKATER_CM1_CONFIGMAP", "value": "sha-1"}]


class TestEnvVarDeleteStrategy:
    def setup_method(self) -> None:
        self.options = ReloaderOptions()

    def test_removes_env_var_with_json_patch(self) -> None:
        item = make_deployment(
            env=[{"name": "KEEP", "value": "1"}, {"name": "STAKATER_CM1_CONFIGMAP", "value": "x"}]
        )

        outcome = invoke_delete_strategy(
            DEPLOYMENT, item, make_config(EMPTY_DATA_FINGERPRINT), True, self.options
        )

        assert outcome.result is ReloadResult.UPDATED
        assert item["spec"]["template"]["spec"]["containers"][1]["env"] == [
            {"name": "KEEP", "value": "1"}
        ]
        assert outcome.patch is not None
        assert outcome.patch.patch_type == JSON_PATCH
        assert outcome.patch.body == [
            {"op": "remove", "path": "/spec/template/spec/containers/1/env/1"}
        ]

    def test_missing_env_var_is_not_updated(self) -> None:
        item = make_deployment(env=[{"name": "KEEP", "value": "1"}])

        outcome = invoke_delete_strategy(
            DEPLOYMENT, item, make_config(EMPTY_DATA_FINGERPRINT), True, self.options
        )

        assert outcome.result is ReloadResult.NOT_UPDATED


class TestAnnotationStrategy:
    def setup_method(self) -> None:
        self.options = ReloaderOptions(reload_strategy=RELOAD_STRATEGY_ANNOTATIONS)

    def test_stamps_last_reloaded_from(self) -> None:
        item = make_deployment()

        outcome = invoke_reload_strategy(DEPLOYMENT, item, make_config(), True, self.options)

        assert outcome.result is ReloadResult.UPDATED
        annotations = item["spec"]["template"]["metadata"]["annotations"]
        assert annotations[KEYS.last_reloaded_from] == "sha-1"
        assert outcome.patch is not None
        assert outcome.patch.body == {
            "spec": {"template": {"metadata": {"annotations": {KEYS.last_reloaded_from: "sha-1"}}}}
        }

    def test_delete_restamps_with_empty_fingerprint(self) -> None:
        item = make_deployment()

        outcome = invoke_delete_strategy(
            DEPLOYMENT, item, make_config(EMPTY_DATA_FINGERPRINT), True, self.options
        )

        assert outcome.result is ReloadResult.UPDATED
        annotations = item["spec"]["template"]["metadata"]["annotations"]
        assert annotations[KEYS.last_reloaded_from] == EMPTY_DATA_FINGERPRINT
        assert "env" not in item["spec"]["template"]["spec"]["containers"][1]
