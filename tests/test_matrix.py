import pytest

from matrixci.dsl import job
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand_template, matrix_label

from helpers import ok


def test_no_axes_is_one_unparameterised_instance():
    assert expand_template(job("lint", ok("s"))) == [{}]


def test_cross_product_in_declaration_order():
    t = job("build", ok("s"), matrix={"build_type": ["Release", "Debug"], "os": ["linux", "macos", "windows"]})
    combos = expand_template(t)

    assert len(combos) == 6
    assert combos[0] == {"build_type": "Release", "os": "linux"}
    assert combos[1] == {"build_type": "Release", "os": "macos"}
    assert combos[-1] == {"build_type": "Debug", "os": "windows"}
    assert list(combos[0]) == ["build_type", "os"]


def test_exclude_removes_matching_combinations():
    t = job(
        "build",
        ok("s"),
        matrix={"build_type": ["Release", "Debug"], "os": ["linux", "macos", "windows"]},
        exclude=[{"build_type": "Debug", "os": "windows"}],
    )
    combos = expand_template(t)

    assert len(combos) == 5
    assert {"build_type": "Debug", "os": "windows"} not in combos
    labels = [matrix_label(c) for c in combos]
    assert len(set(labels)) == len(labels)


def test_partial_exclude_rule_removes_every_match():
    t = job("build", ok("s"), matrix={"a": [1, 2], "b": ["x", "y"]}, exclude=[{"a": 1}])
    assert expand_template(t) == [{"a": 2, "b": "x"}, {"a": 2, "b": "y"}]


def test_label_format():
    assert matrix_label({"build_type": "Release", "os": "ubuntu-18.04"}) == "build_type=Release, os=ubuntu-18.04"
    assert matrix_label({}) == ""


@pytest.mark.parametrize(
    "exclude, message",
    [
        ([{"arch": "arm64"}], "undeclared axis 'arch'"),
        ([{"os": "solaris"}], "undeclared value 'solaris'"),
        ([{}], "empty matrix exclude rule"),
    ],
)
def test_malformed_exclude_is_a_configuration_error(exclude, message):
    t = job("build", ok("s"), matrix={"os": ["linux", "macos"]}, exclude=exclude)
    with pytest.raises(ConfigurationError) as exc:
        expand_template(t)
    assert message in exc.value.message
    assert exc.value.job == "build"


def test_empty_axis_is_a_configuration_error():
    t = job("build", ok("s"), matrix={"os": []})
    with pytest.raises(ConfigurationError, match="has no values"):
        expand_template(t)


def test_excluding_everything_is_a_configuration_error():
    t = job("build", ok("s"), matrix={"os": ["linux"]}, exclude=[{"os": "linux"}])
    with pytest.raises(ConfigurationError, match="every matrix combination is excluded"):
        expand_template(t)
