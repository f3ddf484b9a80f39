"""Test the capture-side graph walk.

Tests that captured state is copied once per identity, that nested functions
become records, and that references back to the captured function are
replaced by self references or recorded as fix-ups.
"""

import pytest

import closure_fixtures
from closure_fixtures import Greeter, Holder, Loud, Slotted
from closurekit import AnalysisError, ConfigModel
from closurekit.support.scope import (
    CapturedFunction,
    IdentityMap,
    SelfReference,
    capture_scope,
)
from closurekit.support.walker import capture_function, is_plain_instance


class TestCapturedState:
    """Copying the values a function captures."""

    def test_values_are_snapshotted(self):
        items = [1, 2]
        f = lambda: items

        record = capture_function(f)
        items.append(3)

        assert record.use["items"] == [1, 2]

    def test_shared_references_stay_shared(self):
        shared = {"k": 1}
        pair = (shared, shared)
        f = lambda: (shared, pair)

        record = capture_function(f)

        assert record.use["pair"][0] is record.use["shared"]
        assert record.use["pair"][1] is record.use["shared"]

    def test_cycles_through_lists(self):
        loop = []
        loop.append(loop)
        f = lambda: loop

        record = capture_function(f)

        assert record.use["loop"][0] is record.use["loop"]

    def test_instances_are_copied_as_shells(self):
        greeter = Greeter("ada")
        f = lambda: greeter.name

        record = capture_function(f)
        shell = record.use["greeter"]

        assert shell is not greeter
        assert type(shell) is Greeter
        assert shell.name == "ada"
        assert shell._Greeter__secret == "ADA"

    def test_opaque_values_pass_through(self):
        label = "x"
        kind = Greeter
        f = lambda: (label, kind)

        record = capture_function(f)

        assert record.use["kind"] is Greeter
        assert record.use["label"] is label

    def test_capture_transform(self):
        config = ConfigModel()
        config.set_capture_transform(lambda use: {name: value * 2 for name, value in use.items()})
        n = 4

        record = capture_function(lambda: n, config)

        assert record.use == {"n": 8}

    def test_capture_transform_sees_live_values(self):
        seen = {}

        def transform(use):
            seen.update(use)
            return {**use, "added": lambda: "added"}

        config = ConfigModel()
        config.set_capture_transform(transform)
        holder = Holder()
        inner = lambda: 1
        f = lambda: (holder, inner)

        record = capture_function(f, config)

        assert seen["holder"] is holder
        assert seen["inner"] is inner
        assert record.use["holder"] is not holder
        assert isinstance(record.use["inner"], CapturedFunction)
        assert isinstance(record.use["added"], CapturedFunction)


class TestNestedFunctions:
    """Functions reachable from captured state."""

    def test_nested_function_becomes_record(self):
        inner = lambda x: x + 1
        outer = lambda x: inner(x) * 2

        record = capture_function(outer)

        assert isinstance(record.use["inner"], CapturedFunction)
        assert record.use["inner"].use == {}

    def test_function_reachable_twice_is_captured_once(self):
        inner = lambda: 1
        middle = lambda: inner
        outer = lambda: (inner, middle)

        record = capture_function(outer)

        assert record.use["middle"].use["inner"] is record.use["inner"]

    def test_recursive_function_refers_to_itself(self):
        factorial = closure_fixtures.make_factorial()

        record = capture_function(factorial)

        assert record.use["factorial"] == SelfReference(record.identity)

    def test_mutual_recursion(self):
        def is_even(n):
            return True if n == 0 else is_odd(n - 1)

        def is_odd(n):
            return False if n == 0 else is_even(n - 1)

        record = capture_function(is_even)

        assert record.use["is_odd"].use["is_even"] is record

    def test_decorated_callable(self):
        square, _ = closure_fixtures.make_cached()

        record = capture_function(square)

        assert record.decorated
        assert record.name == "square"
        assert isinstance(record.use["calls"], list)


class TestSelfReferences:
    """References from captured state back to the captured function."""

    def test_through_dict(self):
        registry = {}
        f = lambda: registry["self"]
        registry["self"] = f

        record = capture_function(f)

        assert record.use["registry"]["self"] == SelfReference(record.identity)

    def test_through_object_field(self):
        holder = Holder()
        f = lambda: holder.fn
        holder.fn = f

        record = capture_function(f)
        shell = record.use["holder"]

        assert shell.fn is None
        assert record.fixups == [(shell, "fn")]

    def test_through_slot(self):
        slotted = Slotted("s")
        f = lambda: slotted.fn
        slotted.fn = f

        record = capture_function(f)
        shell = record.use["slotted"]

        assert shell.label == "s"
        assert record.fixups == [(shell, "fn")]

    def test_through_tuple_is_rejected(self):
        box = []
        f = lambda: box
        box.append((f,))

        with pytest.raises(AnalysisError):
            capture_function(f)


class TestBinding:
    """Receiver and scope recorded for methods."""

    def test_receiver_for_closure_in_method(self):
        greeter = Greeter("ada")

        record = capture_function(greeter.make())

        assert record.receiver_name == "self"
        assert record.receiver is not greeter
        assert record.receiver.name == "ada"
        assert record.use == {"SUFFIX": "!"}

    def test_bound_method(self):
        record = capture_function(Loud("ada").greet)

        assert record.bind_method
        assert record.requires_receiver_binding
        assert record.scope == "closure_fixtures:Loud"
        assert record.requires_scope_binding

    def test_staticmethod_flag(self):
        record = capture_function(Greeter.shout)

        assert record.is_static
        assert not record.bind_method


class TestIdentityMap:

    def test_register_and_get(self):
        identity_map = IdentityMap()
        a, b = [], []

        identity_map.register(a, "copy")

        assert a in identity_map
        assert b not in identity_map
        assert identity_map.get(a) == "copy"
        assert identity_map.get(b, "default") == "default"
        assert len(identity_map) == 1

    def test_equal_values_are_distinct_entries(self):
        identity_map = IdentityMap()
        a, b = [1], [1]

        identity_map.register(a, "first")
        identity_map.register(b, "second")

        assert identity_map.get(a) == "first"
        assert identity_map.get(b) == "second"

    def test_scope_is_shared_by_nested_calls_and_torn_down(self):
        key = object()

        with capture_scope() as outer:
            with capture_scope() as inner:
                assert inner is outer
            outer.register(key, 1)

        assert len(outer) == 0

        with capture_scope() as fresh:
            assert fresh is not outer

    def test_held_scope_survives_nested_exit(self):
        key = object()

        with capture_scope(hold=True) as held:
            with capture_scope() as nested:
                nested.register(key, 1)
            assert key in held


class TestPlainInstances:

    def test_plain_class(self):
        assert is_plain_instance(Greeter("ada"))

    def test_builtins_and_containers(self):
        assert not is_plain_instance([])
        assert not is_plain_instance(3)

    def test_custom_reduce(self):
        class Reducing:
            def __reduce__(self):
                return (Reducing, ())

        assert not is_plain_instance(Reducing())
