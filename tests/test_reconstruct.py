"""Test rebuilding live functions from captured records."""

import pytest

import closure_fixtures
from closure_fixtures import Greeter, Holder, Loud, Slotted
from closurekit import ConfigModel, ReconstructionError
from closurekit.support.reconstruct import CompileCache, compile_unit, reconstruct
from closurekit.support.scope import CapturedFunction
from closurekit.support.walker import capture_function


def rebuild(function, config=None):
    return reconstruct(capture_function(function), config)


class TestRebuild:
    """Functions come back behaving like the originals."""

    def test_lambda(self):
        n = 5
        f = lambda x: x + n

        live = rebuild(f)
        n = 99

        assert live(10) == 15
        assert f(10) == 109

    def test_metadata_is_restored(self):
        def add(a, b=3, *, c=4):
            """Add things."""
            return a + b + c

        add.tag = "kept"

        live = rebuild(add)

        assert live(1) == 8
        assert live.__defaults__ == (3,)
        assert live.__kwdefaults__ == {"c": 4}
        assert live.__doc__ == "Add things."
        assert live.__qualname__ == add.__qualname__
        assert live.__module__ == add.__module__
        assert live.tag == "kept"

    def test_captured_state_is_independent(self):
        counter = closure_fixtures.make_counter(10)

        live = rebuild(counter)

        assert live() == 11
        assert live() == 12
        assert counter() == 11

    def test_aliased_imports(self):
        live = rebuild(closure_fixtures.encode)

        assert live([("a", 1)]).startswith('{"a": 1}')

    def test_module_function_reference(self):
        live = rebuild(closure_fixtures.make_doubler())

        assert live(4) == 9

    def test_rebuilt_function_can_be_captured_again(self):
        n = 2
        live = rebuild(lambda x: x * n)

        again = rebuild(live)

        assert again(3) == 6

    def test_capture_resolver(self):
        config = ConfigModel()
        config.set_capture_resolver(lambda use: {**use, "n": 100})
        n = 1

        assert rebuild(lambda: n, config)() == 100

    def test_decorated_callable(self):
        square, calls = closure_fixtures.make_cached()

        live = rebuild(square)

        assert live(4) == 16
        assert live(4) == 16
        assert live.cache_info().hits == 1
        assert live.__wrapped__.__qualname__ == square.__wrapped__.__qualname__
        assert calls == []


class TestBinding:
    """Receiver and scope rebinding."""

    def test_receiver(self):
        live = rebuild(Greeter("ada").make())

        assert live("Hi") == "Hi, ada!"

    def test_private_attribute_through_receiver(self):
        live = rebuild(Greeter("ada").make_secret())

        assert live() == "ADA"

    def test_bound_method_with_super(self):
        loud = Loud("ada")

        live = rebuild(loud.greet)

        assert live() == "HELLO, ADA"
        assert isinstance(live.__self__, Loud)
        assert live.__self__ is not loud

    def test_staticmethod(self):
        live = rebuild(Greeter.shout)

        assert live("hey") == "HEY"


class TestReferences:
    """Shared and self references are relinked."""

    def test_shared_state_is_shared(self):
        shared = []
        push = lambda value: shared.append(value)
        read = lambda: shared
        both = lambda: (push, read)

        push2, read2 = rebuild(both)()
        push2(1)

        assert read2() == [1]
        assert shared == []

    def test_recursive_function(self):
        live = rebuild(closure_fixtures.make_factorial())

        assert live(5) == 120
        assert live.__closure__[0].cell_contents is live

    def test_mutual_recursion(self):
        def is_even(n):
            return True if n == 0 else is_odd(n - 1)

        def is_odd(n):
            return False if n == 0 else is_even(n - 1)

        live = rebuild(is_even)

        assert live(10) is True
        assert live(7) is False

    def test_self_reference_through_dict(self):
        registry = {}
        f = lambda: registry["self"]
        registry["self"] = f

        live = rebuild(f)

        assert live() is live

    def test_self_reference_through_object_field(self):
        holder = Holder()
        f = lambda: holder.fn
        holder.fn = f

        live = rebuild(f)

        assert live() is live

    def test_self_reference_through_slot(self):
        slotted = Slotted("s")
        f = lambda: (slotted.label, slotted.fn)
        slotted.fn = f

        live = rebuild(f)

        assert live() == ("s", live)


class TestReconstructionErrors:

    def test_unparsable_unit(self):
        record = CapturedFunction(function="lambda x: (\n", name="<lambda>", identity=0)

        with pytest.raises(ReconstructionError):
            reconstruct(record)

    def test_statements_before_literal(self):
        record = CapturedFunction(
            function="import os\nos.getcwd()\nlambda: 1\n", name="<lambda>", identity=0
        )

        with pytest.raises(ReconstructionError):
            reconstruct(record)

    def test_no_function_literal(self):
        record = CapturedFunction(function="x = 1\n", name="x", identity=0)

        with pytest.raises(ReconstructionError):
            reconstruct(record)

    def test_source_budget(self):
        config = ConfigModel()
        config.RECONSTRUCT.MAX_SOURCE_LENGTH = 10
        record = CapturedFunction(function="lambda: 'long enough'\n", name="<lambda>", identity=0)

        with pytest.raises(ReconstructionError, match="over the limit"):
            reconstruct(record, config)

    def test_unresolvable_scope(self):
        record = CapturedFunction(
            function="def f(self):\n    return __class__\n",
            name="f",
            identity=0,
            scope="closure_fixtures:Missing",
        )

        with pytest.raises(ReconstructionError):
            reconstruct(record)

    def test_invalid_captured_name(self):
        record = CapturedFunction(
            function="lambda: 1\n", name="<lambda>", identity=0, use={"not valid": 1}
        )

        with pytest.raises(ReconstructionError):
            reconstruct(record)


class TestCompileCache:

    def test_least_recently_used_is_evicted(self):
        cache = CompileCache(size=2)
        cache.add_code("a", 1)
        cache.add_code("b", 2)
        cache.get_code("a")
        cache.add_code("c", 3)

        assert cache.get_code("b") is None
        assert cache.get_code("a") == 1
        assert cache.get_code("c") == 3

    def test_compiled_unit_is_reused(self):
        first = compile_unit("lambda: 1\n", [])
        second = compile_unit("lambda: 1\n", [])

        assert first is second

    def test_parameters_are_part_of_the_key(self):
        first = compile_unit("lambda: n\n", ["n"])
        second = compile_unit("lambda: n\n", [])

        assert first is not second
