"""Test closure serialization through dumps/loads.

Covers:
- Round trips of lambdas, nested functions and recursive functions
- Identity preservation across a whole payload
- File based payloads
- Loading in a fresh interpreter
- Classes and dataclasses defined at runtime
"""

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

import closure_fixtures
import closurekit
from closurekit import AnalysisError, ConfigModel, dumps, loads

LIMIT = 100


class TestRoundTrip:
    """Functions survive a dumps/loads round trip."""

    def test_outer_variable_is_snapshotted(self):
        n = 5
        f = lambda x: x + n

        data = dumps(f)
        n = 99
        restored = loads(data)

        assert restored(10) == 15

    def test_no_captured_state(self):
        assert loads(dumps(lambda: 42))() == 42

    def test_nested_def(self):
        def greet(name, punctuation="!"):
            return f"Hello, {name}{punctuation}"

        restored = loads(dumps(greet))

        assert restored("ada") == "Hello, ada!"
        assert restored.__name__ == "greet"

    def test_recursive_function(self):
        restored = loads(dumps(closure_fixtures.make_factorial()))

        assert restored(6) == 720

    def test_receiver(self):
        restored = loads(dumps(closure_fixtures.Greeter("ada").make()))

        assert restored("Hi") == "Hi, ada!"

    def test_explicit_capture(self):
        a, b = 1, 2
        f = closurekit.uses("a")(lambda: a + b)

        restored = loads(dumps(f))

        with pytest.raises(NameError):
            restored()

    def test_explicit_capture_with_module_constant(self):
        n = 5
        f = closurekit.uses("n")(lambda x: x + n + LIMIT)

        assert loads(dumps(f))(1) == 106

    def test_automatic_capture(self):
        a, b = 1, 2

        assert loads(dumps(lambda: a + b))() == 3

    def test_importable_function_is_pickled_by_reference(self):
        assert loads(dumps(closure_fixtures.helper)) is closure_fixtures.helper


class TestIdentity:
    """Sharing across a payload is preserved."""

    def test_shared_state_between_functions(self):
        shared = []
        f = lambda: shared
        g = lambda: shared

        f2, g2 = loads(dumps((f, g)))

        assert f2() is g2()

    def test_same_function_twice(self):
        f = lambda: 1

        a, b = loads(dumps([f, f]))

        assert a is b

    def test_function_shared_between_payload_and_state(self):
        inner = lambda: "inner"
        outer = lambda: inner

        outer2, inner2 = loads(dumps((outer, inner)))

        assert outer2() is inner2

    def test_self_reference(self):
        registry = {}
        f = lambda: registry["self"]
        registry["self"] = f

        restored = loads(dumps(f))

        assert restored() is restored


class TestFiles:

    def test_path_round_trip(self, tmp_path: Path):
        n = 3
        path = tmp_path / "f.pkl"

        dumps(lambda x: x * n, path)

        assert loads(path)(2) == 6
        assert loads(str(path))(2) == 6


class TestConfig:

    def test_explicit_config_reaches_reconstruction(self):
        config = ConfigModel()
        config.set_capture_resolver(lambda use: {"n": 7})
        n = 1

        data = dumps(lambda: n)

        assert loads(data, config=config)() == 7
        assert loads(data)() == 1

    def test_explicit_config_reaches_capture(self):
        config = ConfigModel()
        config.set_capture_transform(lambda use: {"n": use["n"] + 1})
        n = 1

        assert loads(dumps(lambda: n, config=config))() == 2


class TestErrors:

    def test_unavailable_source(self):
        namespace = {}
        exec("f = lambda x: x", namespace)

        with pytest.raises(AnalysisError):
            dumps(namespace["f"])


class TestFreshProcess:

    def test_aliased_imports_resolve_without_the_defining_module(self, tmp_path: Path):
        path = tmp_path / "encode.pkl"
        dumps(closure_fixtures.encode, path)

        src = str(Path(closurekit.__file__).resolve().parents[1])
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [src, env.get("PYTHONPATH")]))

        script = (
            "import sys\n"
            "from closurekit import loads\n"
            "encode = loads(sys.argv[1])\n"
            "print(encode([('a', 1)]))\n"
        )
        result = subprocess.run(
            [sys.executable, "-c", script, str(path)],
            capture_output=True,
            text=True,
            cwd=tmp_path,
            env=env,
            check=True,
        )

        assert result.stdout.strip() == '{"a": 1}' + os.sep


class TestRuntimeClasses:
    """Classes defined at runtime keep working, with methods captured as closures."""

    def test_class_with_methods(self):
        class Counter:
            def __init__(self, start):
                self.value = start

            def bump(self, by=1):
                self.value += by
                return self.value

        restored = loads(dumps(Counter))

        counter = restored(5)
        assert counter.bump() == 6
        assert counter.bump(by=4) == 10

    def test_dataclass_with_method(self):
        @dataclass
        class Point:
            x: int
            y: int

            def norm2(self):
                return self.x * self.x + self.y * self.y

        restored = loads(dumps(Point))

        assert restored(3, 4).norm2() == 25
        assert restored(3, 4) == restored(3, 4)
