"""Tests for plan building, templating and tag selection."""

import dataclasses

import pytest

from devincubator.errors import ConfigError, UnknownKindError
from devincubator.facts import gather_facts
from devincubator.plan import StateAssertion, is_selected, select
from devincubator.templating import render_value, render_vars


# --- building ---


def test_group_tags_merge_into_assertions(make_plan):
    plan = make_plan("""\
        groups:
          - name: g
            tags: [docker]
            assertions:
              - id: a
                kind: pkg
                tags: [extra]
                params: {name: a}
    """)
    assertion = plan.groups[0].assertions[0]
    assert assertion.tags == frozenset({"docker", "extra"})
    assert assertion.group == "g"
    assert assertion.qualified_name == "g/a"


def test_loop_expands_with_item(make_plan):
    plan = make_plan("""\
        vars:
          users: ["{{ user }}", bob]
        groups:
          - name: g
            assertions:
              - id: member
                kind: pkg
                loop: "{{ users }}"
                params: {name: "pkg-{{ item }}"}
    """)
    assertions = plan.groups[0].assertions
    assert [a.identifier for a in assertions] == ["member[dev]", "member[bob]"]
    assert [a.parameters["name"] for a in assertions] == ["pkg-dev", "pkg-bob"]


def test_loop_over_non_list_rejected(make_plan):
    with pytest.raises(ConfigError, match="loop must render to a list"):
        make_plan("""\
            vars:
              single: just-a-string
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: pkg
                    loop: "{{ single }}"
                    params: {name: x}
        """)


def test_undefined_template_variable_rejected(make_plan):
    with pytest.raises(ConfigError, match="Cannot render"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: pkg
                    params: {name: "{{ nope }}"}
        """)


def test_var_overrides_flow_into_params(make_plan):
    plan = make_plan(
        """\
        vars:
          editor: vim
        groups:
          - name: g
            assertions:
              - id: a
                kind: pkg
                params: {name: "{{ editor }}"}
        """,
        extra_vars={"editor": "emacs"},
    )
    assert plan.groups[0].assertions[0].parameters["name"] == "emacs"


def test_unknown_kind_fails_at_load(make_plan):
    with pytest.raises(UnknownKindError, match="teleport"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: teleport
        """)


def test_duplicate_identifier_rejected(make_plan):
    with pytest.raises(ConfigError, match="Duplicate assertion identifier 'tools'"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: tools
                    kind: pkg
                    params: {name: a}
                  - id: tools
                    kind: pkg
                    params: {name: a}
        """)


def test_same_identifier_in_different_groups_allowed(make_plan):
    plan = make_plan("""\
        groups:
          - name: g1
            assertions:
              - id: tools
                kind: pkg
                params: {name: a}
          - name: g2
            assertions:
              - id: tools
                kind: pkg
                params: {name: b}
    """)
    assert [g.assertions[0].qualified_name for g in plan] == ["g1/tools", "g2/tools"]


def test_invalid_state_rejected(make_plan):
    with pytest.raises(ConfigError, match="state 'started' is not valid"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: pkg
                    state: started
                    params: {name: a}
        """)


def test_invalid_params_rejected(make_plan):
    with pytest.raises(ConfigError, match="invalid params"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: pkg
                    params: {nam: a}
        """)


def test_notify_unknown_handler_rejected(make_plan):
    with pytest.raises(ConfigError, match="unknown handler 'restart'"):
        make_plan("""\
            groups:
              - name: g
                assertions:
                  - id: a
                    kind: pkg
                    params: {name: a}
                    notify: [restart]
        """)


def test_assertions_are_immutable(make_plan):
    plan = make_plan("""\
        groups:
          - name: g
            assertions:
              - id: a
                kind: pkg
                params: {name: a}
    """)
    assertion = plan.groups[0].assertions[0]
    with pytest.raises(dataclasses.FrozenInstanceError):
        assertion.identifier = "b"
    with pytest.raises(TypeError):
        assertion.parameters["name"] = "b"


# --- tag selection ---


def _assertion(*tags):
    return StateAssertion(kind="pkg", identifier="a", parameters={}, tags=frozenset(tags))


@pytest.mark.parametrize(
    "tags, selection, skip, expected",
    [
        ((), None, None, True),
        (("docker",), None, None, True),
        (("never",), None, None, False),
        (("docker",), {"docker"}, None, True),
        (("docker",), {"vscode"}, None, False),
        (("always",), {"vscode"}, None, True),
        (("never", "debug"), {"debug"}, None, True),
        (("docker",), None, {"docker"}, False),
        (("always",), {"vscode"}, {"always"}, False),
    ],
)
def test_is_selected(tags, selection, skip, expected):
    assert is_selected(_assertion(*tags), selection, skip) is expected


def test_select_drops_empty_groups_and_their_checks(make_plan):
    plan = make_plan("""\
        groups:
          - name: base
            tags: [base]
            assertions:
              - id: a
                kind: pkg
                params: {name: a}
          - name: docker
            tags: [docker]
            assertions:
              - id: b
                kind: pkg
                params: {name: b}
            checks:
              - tool: docker
    """)
    groups = select(plan, {"base"})
    assert [g.name for g in groups] == ["base"]

    groups = select(plan, {"docker"})
    assert [g.name for g in groups] == ["docker"]
    assert len(groups[0].checks) == 1


# --- templating and facts ---


def test_render_value_keeps_native_types():
    context = {"users": ["a", "b"], "arch": "amd64"}
    assert render_value("{{ users }}", context) == ["a", "b"]
    assert render_value("deb [arch={{ arch }}] http://x stable", context) == "deb [arch=amd64] http://x stable"
    assert render_value({"k": ["{{ arch }}", 3]}, context) == {"k": ["amd64", 3]}
    assert render_value("plain $text", context) == "plain $text"


def test_render_vars_can_reference_earlier_vars():
    rendered = render_vars({"a": "{{ user }}", "b": ["{{ a }}"]}, {"user": "dev"})
    assert rendered == {"a": "dev", "b": ["dev"]}


def test_gather_facts_reads_os_release(tmp_path):
    os_release = tmp_path / "os-release"
    os_release.write_text('ID=ubuntu\nVERSION_CODENAME=noble\nPRETTY_NAME="Ubuntu 24.04"\n')
    facts = gather_facts(os_release)
    assert facts["distro"] == "ubuntu"
    assert facts["codename"] == "noble"
    assert facts["arch"] in {"amd64", "arm64", "armhf"}
    assert facts["user"]
