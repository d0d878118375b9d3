from __future__ import annotations

import shlex

from fcvm.environment import guest_variable_name, infer_guest_environment, render_env_file


def test_denylist_and_reserved_prefix_stay_on_host() -> None:
    assert guest_variable_name("PATH") is None
    assert guest_variable_name("HOME") is None
    assert guest_variable_name("FC_VCPU_COUNT") is None
    assert guest_variable_name("DATABASE_URL") == "DATABASE_URL"


def test_double_underscore_unwraps_denied_names() -> None:
    assert guest_variable_name("__PATH__") == "PATH"
    assert guest_variable_name("__HOME__") == "HOME"
    assert guest_variable_name("__") == "__"


def test_reserved_names_stay_on_host_even_when_wrapped() -> None:
    assert guest_variable_name("__FC_UID__") is None
    assert guest_variable_name("__FC_VCPU_COUNT__") is None
    assert guest_variable_name("INIT_ARGS") is None
    assert guest_variable_name("__INIT_ARGS__") is None


def test_host_init_args_never_reach_env_file() -> None:
    variables = infer_guest_environment({"INIT_ARGS": "$(reboot)", "__FC_UID__": "0", "KEEP": "1"})

    assert variables == {"KEEP": "1"}
    assert render_env_file(variables, uid=1000) == 'export "KEEP=1"\nexport "FC_UID=1000"\n'


def test_infer_skips_multiline_and_invalid_entries() -> None:
    environ = {
        "GREETING": "hello world",
        "PWD": "/root",
        "__PATH__": "/opt/bin:/usr/bin",
        "CERT": "line1\nline2",
        "BASH_FUNC_x%%": "() { :; }",
        "FC_UID": "1000",
    }

    assert infer_guest_environment(environ) == {
        "GREETING": "hello world",
        "PATH": "/opt/bin:/usr/bin",
    }


def test_render_env_file_with_uid_and_init_args() -> None:
    text = render_env_file({"MSG": 'say "$HI"'}, uid=1000, init_args=["a b", "c"])

    assert text.splitlines() == [
        'export "MSG=say \\"\\$HI\\""',
        'export "FC_UID=1000"',
        'export "INIT_ARGS=' + shlex.join(["a b", "c"]) + '"',
    ]


def test_render_env_file_without_init_args() -> None:
    assert render_env_file({}, uid=0) == 'export "FC_UID=0"\n'
