import numpy as np
import pytest

from dae import ParseError, compile_equations


def test_residual_convention():
    system = compile_equations(["der(x) = v", "der(v) = -k*x", "z = x + v - 1"], {"k": 4.0})

    assert system.variables == ("x", "v", "z")
    assert system.differential_mask.tolist() == [True, True, False]

    y = np.array([1.0, 2.0, 0.5])
    yp = np.array([10.0, 20.0, 30.0])
    r = system(0.0, y, yp)
    # differential: yp - rhs, algebraic: rhs
    assert np.allclose(r, [10.0 - 2.0, 20.0 + 4.0, 1.0 + 2.0 - 1.0])


def test_negated_divisor_in_rhs():
    system = compile_equations(["der(x) = 1/-k*x"], {"k": 2.0})
    r = system(0.0, np.array([1.0]), np.array([0.0]))
    assert np.allclose(r, [0.5])


def test_compilation_is_deterministic():
    lines = ["der(x) = -a*x + sin(t)*y", "y = x^2 + y - 3 / (1 + x*x)"]
    first = compile_equations(lines, {"a": 0.3})
    second = compile_equations(lines, {"a": 0.3})

    rng = np.random.default_rng(0)
    for _ in range(5):
        y = rng.normal(size=2)
        yp = rng.normal(size=2)
        t = float(rng.uniform())
        assert np.array_equal(first(t, y, yp), second(t, y, yp))


def test_duplicate_equation_is_rejected():
    with pytest.raises(ParseError, match="appears in multiple equations"):
        compile_equations(["x = 1", "x = 2"])


def test_invalid_left_hand_side():
    with pytest.raises(ParseError, match="Invalid variable name"):
        compile_equations(["2*x = 1"])
    with pytest.raises(ParseError, match="reserved"):
        compile_equations(["t = 1"])
    with pytest.raises(ParseError, match="Invalid equation format"):
        compile_equations(["x == 1"])
    with pytest.raises(ParseError, match="Invalid equation format"):
        compile_equations(["x + 1"])


def test_parameter_cannot_be_variable():
    with pytest.raises(ParseError, match="Cannot use parameter k as variable"):
        compile_equations(["k = x", "der(x) = 1"], {"k": 1.0})


def test_undefined_symbols_are_reported():
    with pytest.raises(ParseError, match="Undefined symbols in equation 'der\\(x\\) = c\\*x': c"):
        compile_equations(["der(x) = c*x"])
    with pytest.raises(ParseError, match="der\\(\\) of undefined variables"):
        compile_equations(["x = der(w)"])


def test_no_equations():
    with pytest.raises(ParseError, match="No equations provided"):
        compile_equations(["// nothing here", ""])


def test_comments_and_semicolons():
    system = compile_equations(
        """
        /* oscillator
           with two states */
        der(x) = v;   // position
        der(v) = -x;  # velocity
        """
    )
    assert system.variables == ("x", "v")
    assert np.allclose(system(0.0, np.array([1.0, 0.0]), np.zeros(2)), [0.0, 1.0])


def test_declared_variable_order():
    system = compile_equations(["der(x) = v", "der(v) = -x"], variables=["v", "x"])
    assert system.variables == ("v", "x")
    assert system.index_of("x") == 1
    # row k belongs to variable k
    r = system(0.0, np.array([2.0, 1.0]), np.zeros(2))
    assert np.allclose(r, [1.0, -2.0])


def test_declared_variables_must_match():
    with pytest.raises(ParseError, match="Missing equations for variables: z"):
        compile_equations(["der(x) = 1"], variables=["x", "z"])
    with pytest.raises(ParseError, match="undeclared variables: y"):
        compile_equations(["der(x) = 1", "y = x"], variables=["x"])


def test_with_parameters_rebinds_values():
    system = compile_equations(["der(x) = -k*x"], {"k": 1.0})
    faster = system.with_parameters({"k": 3.0})

    y = np.array([2.0])
    assert np.allclose(system(0.0, y, np.zeros(1)), [2.0])
    assert np.allclose(faster(0.0, y, np.zeros(1)), [6.0])
    with pytest.raises(ParseError, match="Unknown parameters"):
        system.with_parameters({"q": 1.0})
