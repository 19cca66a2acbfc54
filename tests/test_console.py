import io

from dotci.errors import ExitFailure
from dotci.ui.console import JOB_COLORS, Console, JobOutput


def test_job_output_prefixes_complete_lines():
    stream = io.StringIO()
    out = JobOutput("build", "green", stream=stream)
    out.write(b"first line\nsec")
    assert stream.getvalue() == "build | first line\n"
    out.write(b"ond\n")
    out.write(b"tail")
    out.flush()
    assert stream.getvalue() == "build | first line\nbuild | second\nbuild | tail\n"


def test_long_names_are_truncated():
    stream = io.StringIO()
    out = JobOutput("a-very-long-job-name-indeed", "red", stream=stream)
    out.write(b"x\n")
    assert stream.getvalue() == "a-very-long-job-n... | x\n"


def test_colors_rotate_per_job():
    c = Console()
    colors = [c.job_color(f"job{i}") for i in range(len(JOB_COLORS) + 1)]
    assert colors[: len(JOB_COLORS)] == JOB_COLORS
    assert colors[-1] == JOB_COLORS[0]
    assert c.job_color("job0") == JOB_COLORS[0]


def test_exception_without_debug_is_one_block(capsys):
    Console().print_exception(ExitFailure(job="unit", message="container x exited with status code 2", exit_code=2))
    err = capsys.readouterr().err
    assert "exit_failure: container x exited with status code 2" in err
    assert "job=unit" in err
    assert "Traceback" not in err


def test_debug_lines_only_in_debug_mode(capsys):
    Console().print_debug("hidden")
    Console(debug=True).print_debug("shown")
    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "[DEBUG] shown" in err
