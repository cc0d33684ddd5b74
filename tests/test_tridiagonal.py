import os
import pytest
import numpy as np
from numpy.testing import assert_allclose

from utils import TridiagonalSystem, SingularSystemError, report_column, report_column_solve_error

def random_system(n, seed = 0):
    rng = np.random.default_rng(seed)
    lower = rng.uniform(-1, 0, n - 1)
    upper = rng.uniform(-1, 0, n - 1)
    diagonal = 2.5 + rng.uniform(0, 1, n)
    rhs = rng.uniform(-5, 5, n)
    return TridiagonalSystem(lower, diagonal, upper, rhs)

def test_solve_matches_dense():
    system = random_system(12)
    x = system.solve()

    assert_allclose(np.asarray(system.to_dense()) @ np.asarray(x), system.rhs, atol = 1e-12)
    assert system.zero_pivot_position() == -1

def test_single_equation():
    system = TridiagonalSystem(np.zeros(0), [4.0], np.zeros(0), [2.0])
    assert_allclose(system.solve(), [0.5])

def test_norms():
    system = TridiagonalSystem([-1.0, -1.0], [4.0, 4.0, 4.0], [-2.0, -2.0], [0.0, 0.0, 0.0])

    assert system.norm1() == pytest.approx(7.0)
    assert system.ddratio() == pytest.approx(0.75)

    degenerate = TridiagonalSystem([1.0], [0.0, 1.0], [1.0], [0.0, 0.0])
    assert degenerate.ddratio() == -1.0

def test_zero_pivot_raises():
    system = TridiagonalSystem([1.0, 1.0], [1.0, 1.0, 3.0], [1.0, 1.0], [1.0, 2.0, 3.0])

    assert system.zero_pivot_position() == 1

    with pytest.raises(SingularSystemError) as info:
        system.solve()

    assert info.value.position == 1
    assert info.value.system is system

def test_non_finite_rhs_raises():
    system = TridiagonalSystem([0.0], [1.0, 1.0], [-1.0], [np.inf, 0.0])

    with pytest.raises(SingularSystemError) as info:
        system.solve()

    assert info.value.position == 0

def test_error_is_tagged_with_column():
    system = TridiagonalSystem([0.0], [0.0, 1.0], [0.0], [1.0, 1.0])

    with pytest.raises(SingularSystemError) as info:
        system.solve()

    tagged = info.value.at_column("combined", 3, 4)

    assert (tagged.prefix, tagged.i, tagged.j, tagged.position) == ("combined", 3, 4, 0)
    assert "zero pivot position 0" in str(tagged)

def test_report_files(tmp_path):
    system = random_system(4)
    x = system.solve()

    path = report_column(system, x, "iceenthOnly", 1, 2, directory = tmp_path)

    assert os.path.basename(path) == "iceenthOnly_i1_j2.m"
    text = open(path).read()
    assert "system_A" in text
    assert "solution_x" in text
    assert "diagonal-dominance ratio" in text

    # A second report of the same column does not overwrite the first
    second = report_column(system, x, "iceenthOnly", 1, 2, directory = tmp_path)
    assert second != path
    assert os.path.exists(path)

def test_report_solve_error(tmp_path):
    system = TridiagonalSystem([0.0], [0.0, 1.0], [0.0], [1.0, 1.0])

    with pytest.raises(SingularSystemError) as info:
        system.solve()

    path = report_column_solve_error(info.value.at_column("bedrockOnly", 0, 5), directory = tmp_path)

    assert os.path.basename(path) == "bedrockOnly_i0_j5_zeropivot0.m"
    assert "solution_x" not in open(path).read()
