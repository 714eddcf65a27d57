import pytest

from cisflow.core.configuration import (
    ConfigurationLoader,
    RunSettings,
    build_graph,
    builtin_patterns,
    resolve_pattern,
)
from cisflow.core.errors import ConfigurationError, GraphError, UnknownDependencyError
from cisflow.core.models import TaskSpec


def _write(tmp_path, text, name="workflow.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_builtin_patterns_listed():
    assert builtin_patterns() == ["BOTTLEROCKET", "CIS_AL2023", "EKS_Optimized_AL2023"]


@pytest.mark.parametrize("pattern", ["BOTTLEROCKET", "CIS_AL2023", "EKS_Optimized_AL2023"])
def test_builtin_patterns_load_and_order(pattern):
    spec = ConfigurationLoader(resolve_pattern(pattern)).load()
    graph = build_graph(spec)
    assert spec.name == pattern
    for entry in ("plan", "apply", "build-image", "cluster-plan", "cluster-apply", "run-scan", "clean",
                  "run-static-tests"):
        assert entry in spec.entry_points
    clean = graph.resolve_order(spec.entry_points["clean"])
    assert clean == ["cluster-destroy", "destroy"]
    assert all(graph.get(t).destructive for t in clean)
    assert graph.resolve_order(spec.entry_points["plan"]) == ["init", "plan"]
    assert graph.get("plan").ok_exit_codes == [0, 2]


def test_cis_build_image_publishes_both_levels():
    spec = ConfigurationLoader(resolve_pattern("CIS_AL2023")).load()
    order = build_graph(spec).resolve_order(spec.entry_points["build-image"])
    assert order.index("prepare-templates") < order.index("build-level-1") < order.index("build-level-2")
    assert spec.artifact_names == {"Level1AmiId", "Level2AmiId"}


def test_scan_targets_keep_cli_shorthand():
    spec = ConfigurationLoader(resolve_pattern("CIS_AL2023")).load()
    scan = next(t for t in spec.tasks if t.name == "run-scan")
    assert set(scan.requires) == {"account_id", "name", "region"}


def test_resolve_pattern_accepts_paths(tmp_path):
    path = _write(tmp_path, "name: x\n")
    assert resolve_pattern(str(path)) == path
    with pytest.raises(ConfigurationError):
        resolve_pattern("NOT_A_PATTERN")
    with pytest.raises(ConfigurationError):
        resolve_pattern(str(tmp_path / "missing.yaml"))


def test_invalid_yaml_rejected(tmp_path):
    path = _write(tmp_path, "tasks: [\n")
    with pytest.raises(ConfigurationError):
        ConfigurationLoader(path).load()


def test_schema_errors_rejected(tmp_path):
    path = _write(tmp_path, """
name: demo
entry_points:
  plan: missing-task
tasks:
  - name: plan
    command: [terraform, plan]
""")
    with pytest.raises(ConfigurationError) as ei:
        ConfigurationLoader(path).load()
    assert "missing-task" in ei.value.message


def test_reserved_parameter_names_rejected(tmp_path):
    path = _write(tmp_path, """
name: demo
parameters:
  - name: region
    method: literal
    value: eu-west-1
""")
    with pytest.raises(ConfigurationError) as ei:
        ConfigurationLoader(path).load()
    assert "region" in ei.value.message


def test_unknown_dependency_surfaces_when_building_graph(tmp_path):
    path = _write(tmp_path, """
name: demo
tasks:
  - name: build
    deps: [prepare]
    command: [make]
""")
    spec = ConfigurationLoader(path).load()
    with pytest.raises(UnknownDependencyError):
        build_graph(spec)


def test_artifact_consumer_must_depend_on_producer(tmp_path):
    path = _write(tmp_path, """
name: demo
tasks:
  - name: build
    command: [make]
    publish:
      - artifact: AmiId
        key: /cis_ami/demo/ami_id
        rule: {kind: regex, pattern: "(ami-[0-9a-f]+)"}
  - name: deploy
    command: [echo, "{AmiId}"]
""")
    with pytest.raises(GraphError) as ei:
        build_graph(ConfigurationLoader(path).load())
    assert ei.value.task == "deploy"


def test_task_requires_collects_all_templates():
    spec = TaskSpec(
        name="build",
        command=["make", "subnet_id={subnet_id}", "run_tags={{Name={name}}}"],
        cwd="{workspace}",
        env={"AWS_REGION": "{region}"},
        requires=["account_id"],
    )
    assert spec.requires == ["account_id", "name", "region", "subnet_id", "workspace"]


@pytest.mark.parametrize("bad", [
    {"name": "bad name", "command": ["true"]},
    {"name": "ok", "command": []},
    {"name": "ok", "command": ["true"], "timeout": 0},
])
def test_task_spec_validation(bad):
    with pytest.raises(ValueError):
        TaskSpec(**bad)


def test_settings_from_env():
    s = RunSettings.from_env("CIS_AL2023", environ={"AWS_REGION": "eu-west-1", "CISFLOW_NAME": "prod"})
    assert s.region == "eu-west-1"
    assert s.name == "prod"
    assert s.registry_namespace == "cis_ami"
    assert s.template_values() == {
        "region": "eu-west-1",
        "name": "prod",
        "image_tag": "latest",
        "registry_namespace": "cis_ami",
    }


def test_settings_defaults():
    s = RunSettings.from_env("CIS_AL2023", environ={})
    assert s.region == "us-west-2"
    assert s.name == "CIS_AL2023"
    assert s.log_dir is None


def test_settings_reject_blank_values():
    with pytest.raises(ConfigurationError):
        RunSettings.from_env("CIS_AL2023", environ={"CISFLOW_NAME": "   "})
