"""Test compiled execution: language semantics of the VM."""
import math
import pytest
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from luarun.lua.compiler import Op, compile_block
from luarun.lua.errors import LuaRuntimeError
from luarun.lua.parser import parse
from luarun.lua.value import LuaTable
from luarun.lua.vm import VirtualMachine, wrap_integer
from luarun.runtime.environment import build_globals


class TestArithmetic:
    """Tests for numbers and arithmetic."""

    @pytest.mark.parametrize("source,expected", [
        ("1 + 1", 2),
        ("7 // 2", 3),
        ("-7 // 2", -4),
        ("7 % 3", 1),
        ("-7 % 3", 2),
        ("7 % -3", -2),
        ("2 * 3 + 4", 10),
        ("'10' + 5", 15),
        ("0x10 * 2", 32),
    ])
    def test_integer_results(self, eval_lua, source, expected):
        """Test integer arithmetic keeps the integer subtype."""
        (value,) = eval_lua(f"return {source}")
        assert value == expected
        assert isinstance(value, int)

    @pytest.mark.parametrize("source,expected", [
        ("7 / 2", 3.5),
        ("4 / 2", 2.0),
        ("2 ^ 10", 1024.0),
        ("1.5 + 1", 2.5),
        ("7.5 // 2", 3.0),
        ("5.5 % 2", 1.5),
        ("'0.5' * 4", 2.0),
    ])
    def test_float_results(self, eval_lua, source, expected):
        """Test float arithmetic and operators that always produce floats."""
        (value,) = eval_lua(f"return {source}")
        assert value == expected
        assert isinstance(value, float)

    def test_division_by_zero(self, eval_lua):
        """Test float division by zero gives inf or nan."""
        pos, neg, nan = eval_lua("return 1/0, -1/0, 0/0")
        assert pos == math.inf
        assert neg == -math.inf
        assert math.isnan(nan)

    def test_integer_division_by_zero(self, run_lua):
        """Test integer floor division by zero is an error."""
        result = run_lua("return 1 // 0")
        assert not result.success
        assert result.error.detail == "line 1: attempt to perform 'n//0'"

    def test_integer_modulo_by_zero(self, run_lua):
        """Test integer modulo by zero is an error."""
        result = run_lua("local z = 0\nreturn 1 % z")
        assert result.error.detail == "line 2: attempt to perform 'n%%0'"

    def test_integer_wraparound(self, eval_lua):
        """Test integers wrap around at 64 bits."""
        (value,) = eval_lua("return math.maxinteger + 1")
        assert value == -(2 ** 63)

    def test_wrap_integer(self):
        """Test the wraparound helper directly."""
        assert wrap_integer(2 ** 63) == -(2 ** 63)
        assert wrap_integer(-(2 ** 63) - 1) == 2 ** 63 - 1
        assert wrap_integer(5) == 5

    def test_power_edge_cases(self, eval_lua):
        """Test exponentiation follows C pow at poles, overflow and bad domains."""
        values = eval_lua("return 0 ^ -1, 0 ^ -2, (-0.0) ^ -1, 10 ^ 309, (-10) ^ 309, (-2) ^ 0.5")
        assert values[:5] == (math.inf, math.inf, -math.inf, math.inf, -math.inf)
        assert math.isnan(values[5])

    def test_numerals_beyond_integer_range(self, eval_lua):
        """Test integer numerals that overflow 64 bits become floats."""
        assert eval_lua("return math.type(9223372036854775807), math.type(9223372036854775808)") == (
            "integer", "float")
        (value,) = eval_lua("return 1" + "0" * 400 + " + 0.5")
        assert value == math.inf
        (value,) = eval_lua("return 1" + "0" * 5000)
        assert value == math.inf

    def test_string_numerals_beyond_integer_range(self, eval_lua):
        """Test string coercion reads oversized integers as floats."""
        assert eval_lua("return tonumber('-9223372036854775808'), '9223372036854775808' + 0") == (
            -(2 ** 63), 9223372036854775808.0)

    def test_unary_minus_and_length(self, eval_lua):
        """Test unary operators."""
        assert eval_lua("return -(3), #'abc', #{1, 2, 3}, not nil") == (-3, 3, 3, True)

    def test_arithmetic_on_nil(self, run_lua):
        """Test arithmetic on nil names the variable."""
        result = run_lua("local x\nreturn x + 1")
        assert result.error.detail == (
            "line 2: attempt to perform arithmetic on a nil value (local 'x')")

    def test_arithmetic_on_table_field(self, run_lua):
        """Test arithmetic errors name table fields."""
        result = run_lua("t = {}\nreturn 1 + t.count")
        assert result.error.detail == (
            "line 2: attempt to perform arithmetic on a nil value (field 'count')")


class TestComparisonAndConcat:
    """Tests for comparison, equality and concatenation."""

    def test_comparisons(self, eval_lua):
        """Test numeric and string ordering."""
        assert eval_lua("return 1 < 2, 2 <= 2, 'a' < 'b', 3 > 4, 1 == 1.0, 'x' ~= 'x'") == (
            True, True, True, False, True, False)

    def test_equality_never_coerces(self, eval_lua):
        """Test values of different types are never equal."""
        assert eval_lua("return 1 == '1', true == 1, {} == {}") == (False, False, False)

    def test_compare_mixed_types(self, run_lua):
        """Test ordering a number against a string fails."""
        result = run_lua("return 1 < 'x'")
        assert result.error.detail == "line 1: attempt to compare number with string"

    def test_compare_same_type(self, run_lua):
        """Test ordering two tables fails."""
        result = run_lua("return {} < {}")
        assert result.error.detail == "line 1: attempt to compare two table values"

    def test_concat(self, eval_lua):
        """Test concatenation of strings and numbers."""
        assert eval_lua("return 'a' .. 1 .. 2.5") == ("a12.5",)

    def test_concat_float_formatting(self, eval_lua):
        """Test integral floats keep their '.0' when converted."""
        assert eval_lua("return 1.0 .. ''") == ("1.0",)

    def test_concat_nil(self, run_lua):
        """Test concatenating nil names the global."""
        result = run_lua("return 'a' .. missing")
        assert result.error.detail == (
            "line 1: attempt to concatenate a nil value (global 'missing')")


class TestLogic:
    """Tests for truthiness and short-circuit operators."""

    def test_and_or(self, eval_lua):
        """Test 'and'/'or' return operands, not booleans."""
        assert eval_lua("return nil and 1, false or 'x', 0 and 'zero', nil or false") == (
            None, "x", "zero", False)

    def test_short_circuit(self, eval_lua, printed):
        """Test the right operand is not evaluated when not needed."""
        eval_lua("local _ = true or print('no')\nlocal _ = false and print('no')")
        assert printed == []

    def test_zero_and_empty_string_are_true(self, eval_lua):
        """Test only nil and false are falsy."""
        assert eval_lua("if 0 and '' then return 'yes' end return 'no'") == ("yes",)


class TestControlFlow:
    """Tests for loops and branches."""

    def test_if_chain(self, eval_lua):
        """Test elseif and else branches."""
        source = """
        local function classify(n)
            if n < 0 then return 'neg'
            elseif n == 0 then return 'zero'
            else return 'pos' end
        end
        return classify(-1), classify(0), classify(5)
        """
        assert eval_lua(source) == ("neg", "zero", "pos")

    def test_while_and_break(self, eval_lua):
        """Test while loops and break."""
        source = """
        local i, total = 0, 0
        while true do
            i = i + 1
            if i > 10 then break end
            total = total + i
        end
        return total
        """
        assert eval_lua(source) == (55,)

    def test_repeat_sees_body_locals(self, eval_lua):
        """Test the until condition can use locals of the body."""
        source = """
        local n = 0
        repeat
            local done = n >= 3
            n = n + 1
        until done
        return n
        """
        assert eval_lua(source) == (4,)

    def test_numeric_for(self, eval_lua):
        """Test numeric for with default, positive and negative steps."""
        source = """
        local up, down, none = {}, {}, 0
        for i = 1, 3 do up[#up + 1] = i end
        for i = 10, 1, -4 do down[#down + 1] = i end
        for i = 1, 0 do none = none + 1 end
        return up[1], up[3], #up, down[1], down[2], down[3], none
        """
        assert eval_lua(source) == (1, 3, 3, 10, 6, 2, 0)

    def test_numeric_for_float_step(self, eval_lua):
        """Test float loops."""
        assert eval_lua("local n = 0 for x = 0, 1, 0.25 do n = n + 1 end return n") == (5,)

    def test_numeric_for_errors(self, run_lua):
        """Test bad for-loop parameters."""
        assert run_lua("for i = 1, 2, 0 do end").error.detail == "line 1: 'for' step is zero"
        assert run_lua("for i = 'a', 2 do end").error.detail == (
            "line 1: 'for' initial value must be a number")

    def test_loop_variable_is_local_copy(self, eval_lua):
        """Test assigning the loop variable does not change iteration."""
        assert eval_lua("local n = 0 for i = 1, 3 do i = 10 n = n + 1 end return n") == (3,)

    def test_generic_for(self, eval_lua):
        """Test generic for with ipairs."""
        source = """
        local sum = 0
        for i, v in ipairs({10, 20, 30}) do sum = sum + i * v end
        return sum
        """
        assert eval_lua(source) == (140,)

    def test_generic_for_custom_iterator(self, eval_lua):
        """Test generic for with a closure iterator."""
        source = """
        local function range(n)
            local i = 0
            return function()
                i = i + 1
                if i <= n then return i end
            end
        end
        local out = ''
        for i in range(3) do out = out .. i end
        return out
        """
        assert eval_lua(source) == ("123",)

    def test_break_in_nested_loops(self, eval_lua):
        """Test break only leaves the innermost loop."""
        source = """
        local count = 0
        for i = 1, 3 do
            for j = 1, 3 do
                if j == 2 then break end
                count = count + 1
            end
        end
        return count
        """
        assert eval_lua(source) == (3,)


class TestFunctions:
    """Tests for functions, closures and multiple values."""

    def test_recursion(self, eval_lua):
        """Test a recursive local function."""
        source = """
        local function fib(n)
            if n < 2 then return n end
            return fib(n - 1) + fib(n - 2)
        end
        return fib(15)
        """
        assert eval_lua(source) == (610,)

    def test_closure_counter(self, eval_lua):
        """Test closures share and update captured locals."""
        source = """
        local function counter()
            local n = 0
            return function() n = n + 1 return n end
        end
        local a, b = counter(), counter()
        a() a()
        return a(), b()
        """
        assert eval_lua(source) == (3, 1)

    def test_closures_capture_each_iteration(self, eval_lua):
        """Test each loop iteration gets a fresh variable."""
        source = """
        local fns = {}
        for i = 1, 3 do fns[i] = function() return i end end
        return fns[1](), fns[2](), fns[3]()
        """
        assert eval_lua(source) == (1, 2, 3)

    def test_nested_upvalues(self, eval_lua):
        """Test upvalues reached through two function levels."""
        source = """
        local x = 1
        local function outer()
            return function() x = x + 1 return x end
        end
        outer()()
        return x
        """
        assert eval_lua(source) == (2,)

    def test_multiple_results_adjusted(self, eval_lua):
        """Test multiple results are expanded only in last position."""
        source = """
        local function three() return 1, 2, 3 end
        local a, b, c, d = three()
        local t = {three(), three()}
        return a, d, #t, (three())
        """
        assert eval_lua(source) == (1, None, 4, 1)

    def test_varargs(self, eval_lua):
        """Test vararg functions and select."""
        source = """
        local function pack(...) return select('#', ...), ... end
        return pack(1, nil, 3)
        """
        assert eval_lua(source) == (3, 1, None, 3)

    def test_missing_arguments_are_nil(self, eval_lua):
        """Test absent parameters are nil and extras are dropped."""
        source = "local function f(a, b) return b end return f(1), f(1, 2, 3)"
        assert eval_lua(source) == (None, 2)

    def test_method_calls(self, eval_lua):
        """Test ':' passes the receiver as self."""
        source = """
        local account = {balance = 10}
        function account:deposit(n) self.balance = self.balance + n return self end
        account:deposit(5):deposit(1)
        return account.balance
        """
        assert eval_lua(source) == (16,)

    def test_string_methods(self, eval_lua):
        """Test methods on string values use the string library."""
        assert eval_lua("local s = 'abc' return s:upper(), ('x'):rep(3)") == ("ABC", "xxx")

    def test_multiple_assignment_evaluates_before_assigning(self, eval_lua):
        """Test swap through multiple assignment."""
        assert eval_lua("local a, b = 1, 2 a, b = b, a return a, b") == (2, 1)

    def test_multiple_assignment_to_fields(self, eval_lua):
        """Test table targets are evaluated before values are stored."""
        source = """
        local t = {}
        local i = 1
        i, t[i] = i + 1, 'x'
        return i, t[1], t[2]
        """
        assert eval_lua(source) == (2, "x", None)


class TestTables:
    """Tests for table behaviour."""

    def test_constructor_and_index(self, eval_lua):
        """Test constructors with every field kind."""
        source = "local t = {1, 2, x = 'a', ['y z'] = 'b', [10] = 'c'} return t[2], t.x, t['y z'], t[10], #t"
        assert eval_lua(source) == (2, "a", "b", "c", 2)

    def test_float_keys_normalized(self, eval_lua):
        """Test t[1.0] and t[1] are the same slot."""
        assert eval_lua("local t = {} t[1.0] = 'a' return t[1]") == ("a",)

    def test_boolean_keys_distinct_from_numbers(self, eval_lua):
        """Test t[true] and t[1] are different slots."""
        assert eval_lua("local t = {} t[1] = 'n' t[true] = 'b' return t[1], t[true]") == ("n", "b")

    def test_nil_index_error(self, run_lua):
        """Test assigning with a nil key fails."""
        assert run_lua("local t = {} t[nil] = 1").error.detail == "line 1: table index is nil"

    def test_index_nil_value(self, run_lua):
        """Test indexing nil names the variable."""
        result = run_lua("local cfg\nreturn cfg.name")
        assert result.error.detail == "line 2: attempt to index a nil value (local 'cfg')"

    def test_returns_table(self, eval_lua):
        """Test tables are returned as LuaTable values."""
        (table,) = eval_lua("return {1, 2}")
        assert isinstance(table, LuaTable)
        assert table.get(2) == 2


class TestErrors:
    """Tests for runtime errors raised by the VM."""

    def test_call_undefined_global(self, run_lua):
        """Test calling an undefined global."""
        result = run_lua("undefined_function()")
        assert result.error.detail == (
            "line 1: attempt to call a nil value (global 'undefined_function')")

    def test_call_method_on_nil_field(self, run_lua):
        """Test calling a missing method names it."""
        result = run_lua("local t = {}\nt:go()")
        assert result.error.detail == "line 2: attempt to call a nil value (method 'go')"

    def test_error_line_inside_function(self, run_lua):
        """Test the position is the line of the failing instruction."""
        result = run_lua("local function f()\n  return nil + 1\nend\nf()")
        assert result.error.detail.startswith("line 2: ")

    def test_error_level_two(self, run_lua):
        """Test error level 2 blames the caller."""
        source = "local function check(x)\n  error('bad input', 2)\nend\n\ncheck(1)"
        assert run_lua(source).error.detail == "line 5: bad input"

    def test_error_level_zero(self, run_lua):
        """Test error level 0 adds no position."""
        assert run_lua("error('plain', 0)").error.detail == "plain"

    def test_error_with_table_value(self, run_lua):
        """Test non-string error values."""
        assert run_lua("error({})").error.detail == "(error object is a table value)"

    def test_stack_overflow(self):
        """Test unbounded recursion is reported as a stack overflow."""
        vm = VirtualMachine(build_globals(), max_call_depth=50)
        chunk = compile_block(parse("local function f() return f() + 1 end return f()"))
        with pytest.raises(LuaRuntimeError) as info:
            vm.execute(chunk)
        assert "stack overflow" in str(info.value)

    def test_instruction_limit(self):
        """Test the optional instruction budget."""
        vm = VirtualMachine(build_globals(), max_steps=1000)
        chunk = compile_block(parse("while true do end"))
        with pytest.raises(LuaRuntimeError) as info:
            vm.execute(chunk)
        assert str(info.value) == "instruction limit exceeded"

    def test_instruction_limit_resets_per_run(self):
        """Test each execute call gets a fresh budget."""
        vm = VirtualMachine(build_globals(), max_steps=100)
        chunk = compile_block(parse("local x = 0 for i = 1, 10 do x = x + i end return x"))
        assert vm.execute(chunk) == (55,)
        assert vm.execute(chunk) == (55,)


class TestCompiler:
    """Tests for compiled prototypes."""

    def test_chunk_ends_with_return(self):
        """Test every chunk ends in a RETURN instruction."""
        chunk = compile_block(parse("local a = 1"))
        assert chunk.code[-1].op is Op.RETURN
        assert len(chunk.code) == len(chunk.lines)

    def test_nested_prototypes_and_upvalues(self):
        """Test closures compile to nested prototypes with upvalue descriptors."""
        chunk = compile_block(parse("local x = 1 local function f() return x end"))
        assert len(chunk.prototypes) == 1
        child = chunk.prototypes[0]
        assert child.name == "f"
        assert [u.name for u in child.upvalues] == ["x"]
        assert child.upvalues[0].from_local

    def test_globals_are_not_upvalues(self):
        """Test free names compile to global access."""
        chunk = compile_block(parse("local function f() return y end"))
        child = chunk.prototypes[0]
        assert child.upvalues == []
        assert any(ins.op is Op.GET_GLOBAL and ins.a == "y" for ins in child.code)

    def test_disassemble(self):
        """Test the disassembly lists instructions and nested functions."""
        listing = compile_block(parse("local function f() end return 1")).disassemble()
        assert "RETURN" in listing
        assert "function <f:1>" in listing

    @pytest.mark.parametrize("source,expected", [
        (" + ".join(["1"] * 600), 600),
        (" - ".join(["1"] * 1000), -998),
        (" or ".join(["false"] * 800) + " or 7", 7),
        (" and ".join(["true"] * 800), True),
        (" .. ".join(["'ab'"] * 100), "ab" * 100),
    ])
    def test_long_operator_chains(self, eval_lua, source, expected):
        """Test long operator chains compile and evaluate."""
        assert eval_lua(f"return {source}") == (expected,)

    def test_chain_keeps_evaluation_order(self, eval_lua, printed):
        """Test operands of a long chain are evaluated left to right."""
        source = "local function v(n) print(n) return n end\nreturn " + " + ".join(
            f"v({n})" for n in range(1, 301))
        assert eval_lua(source) == (sum(range(1, 301)),)
        assert printed == [str(n) for n in range(1, 301)]
