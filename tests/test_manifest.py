import textwrap

import pytest

from dotci.dsl import build, job, manifest
from dotci.errors import ConfigError
from dotci.manifest import load_manifest, parse_manifest
from dotci.model import Manifest, env_list, format_value, variable_items

VALID = textwrap.dedent(
    """
    stages:
      - build
      - test
    jobs:
      - name: compile
        stage: build
        image: golang:1.22
        src: .
        script:
          - go build -o out/app ./...
        variables:
          - CGO_ENABLED: 0
          - RELEASE: true
        artifacts:
          - out
      - name: unit
        stage: test
        image: golang:1.22
        script:
          - go test ./...
        condition: "true"
    """
)


def test_parse_valid_manifest():
    m = parse_manifest(VALID)
    assert m.stages == ("build", "test")
    compile_job = m.jobs[0]
    assert compile_job.name == "compile"
    assert compile_job.script == ("go build -o out/app ./...",)
    assert compile_job.variables == ({"CGO_ENABLED": 0}, {"RELEASE": True})
    assert compile_job.artifacts == ("out",)
    assert [j.name for j in m.jobs_in("test")] == ["unit"]


def test_null_fields_become_empty():
    m = parse_manifest(
        textwrap.dedent(
            """
            stages: [build]
            jobs:
              - name: a
                stage: build
                image: alpine
                script:
                src:
            """
        )
    )
    assert m.jobs[0].script == ()
    assert m.jobs[0].src == ""


@pytest.mark.parametrize(
    "text",
    [
        "stages: [build\n",  # malformed yaml
        "- just\n- a list\n",
        "stages: [build]\njobs:\n  - name: a\n    stage: build\n",  # no image
        "stages: [build]\njobs:\n  - name: a\n    stage: build\n    image: alpine\n    services: [db]\n",
        "stages: []\njobs: []\n",
    ],
)
def test_invalid_documents(text):
    with pytest.raises(ConfigError):
        parse_manifest(text)


def test_undeclared_stage():
    with pytest.raises(ConfigError) as exc:
        parse_manifest("stages: [build]\njobs:\n  - {name: a, stage: deploy, image: alpine}\n")
    assert exc.value.message == "stage not defined: deploy"
    assert exc.value.job == "a"


def test_duplicate_names_and_stages():
    with pytest.raises(ConfigError):
        Manifest(stages=("a", "a"), jobs=()).validate()
    with pytest.raises(ConfigError):
        manifest(["a"], job("x", stage="a", image="alpine"), job("x", stage="a", image="alpine"))


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError) as exc:
        load_manifest(tmp_path / "dot.yml")
    assert "job file not found" in exc.value.message


def test_load_file(tmp_path):
    path = tmp_path / "dot.yml"
    path.write_text(VALID)
    assert len(load_manifest(path).jobs) == 2


def test_variables_flatten_in_order():
    assert variable_items("j", [{"A": 1}, {"B": "x"}]) == [("A", 1), ("B", "x")]
    with pytest.raises(ConfigError) as exc:
        variable_items("j", [{"A": 1, "B": 2}])
    assert exc.value.message == "variables should be defined as a key value pair"


def test_empty_variable_mapping_is_rejected():
    with pytest.raises(ConfigError) as exc:
        variable_items("j", [{"A": 1}, {}])
    assert exc.value.message == "variables should be defined as a key value pair"
    with pytest.raises(ConfigError):
        env_list("j", [{}])


def test_env_list_formats_values_and_appends_globals():
    env = env_list("j", [{"DEBUG": True}, {"N": 2}, {"EMPTY": None}], {"CI": "1"})
    assert env == ["DEBUG=true", "N=2", "EMPTY=", "CI=1"]
    assert format_value(False) == "false"


def test_builder_and_helpers():
    j = (
        build("docs")
        .in_stage("build")
        .with_image("python:3.12")
        .run("make html")
        .with_env(SPHINXOPTS="-W")
        .creates_artifacts("_build/html")
        .when("true")
        .build()
    )
    assert j.variables == ({"SPHINXOPTS": "-W"},)
    assert j.artifacts == ("_build/html",)

    with pytest.raises(ValueError):
        build("x").with_image("alpine").build()
    with pytest.raises(ValueError):
        job("x", stage="s", image="")
