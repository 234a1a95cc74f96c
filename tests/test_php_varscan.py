"""Tests for the variable analysis engine."""

import pytest

from php_tokens import AnalysisError, TokenKind, tokenize
from php_varscan import (
    SOURCE_REDECLARATION, SOURCE_SELF_OUTSIDE_CLASS, SOURCE_STATIC_OUTSIDE_CLASS,
    SOURCE_UNDEFINED, SOURCE_UNUSED, AnalyzerConfig, Position, Scope, ScopeKind,
    ScopeStack, ScopeStackUnderflow, ScopeType, Severity, UnhandledTokenError,
    VariableAnalyzer, VariableInfo, VariableRegistry, analyze_source,
    interpolated_variables,
)


# ============================================================================
# Basic scenarios
# ============================================================================

def test_undefined_read_in_function(analyze):
    d = analyze("<?php function f(){ echo $var; }")
    assert d.errors == [(1, 26, "Variable $var is undefined.")]
    assert d.warnings == []


def test_unused_parameter_with_default(analyze):
    d = analyze("<?php function f($unused, $p = 12){ echo $p; }")
    assert d.warnings == [(1, 18, "Unused function parameter $unused.")]
    assert d.errors == []


def test_globals_unused_and_undefined(analyze):
    d = analyze("<?php function f(){ global $a,$b,$c; echo $a; echo $x; return $b; }")
    assert d.warnings == [(1, 34, "Unused global variable $c.")]
    assert d.errors == [(1, 52, "Variable $x is undefined.")]


def test_foreach_targets_unused(analyze):
    d = analyze("<?php function f(){ foreach($arr as $k=>$v){} }")
    assert d.errors == [(1, 29, "Variable $arr is undefined.")]
    assert d.warnings == [
        (1, 37, "Unused variable $k."),
        (1, 41, "Unused variable $v."),
    ]


def test_initialized_but_never_read(analyze):
    d = analyze("<?php function f(){ $v = 1; }")
    assert d.warnings == [(1, 21, "Unused variable $v.")]
    assert d.errors == []


def test_file_scope_is_tracked(analyze):
    d = analyze("""
        <?php
        $used = 1;
        $unused = 2;
        echo $used, $missing;
    """)
    assert d.warnings == [(3, 1, "Unused variable $unused.")]
    assert d.errors == [(4, 13, "Variable $missing is undefined.")]


def test_function_scope_does_not_see_file_scope(analyze):
    d = analyze("""
        <?php
        $outer = 1;
        function f() {
            return $outer;
        }
        echo $outer;
    """)
    assert d.errors == [(4, 12, "Variable $outer is undefined.")]
    assert d.warnings == []


# ============================================================================
# Undefined variables before and after assignment
# ============================================================================

UNDEFINED_SNIPPETS = [
    ('echo $var;', [(6, "Variable $var is undefined.")], []),
    ('echo "xxx $var xxx";', [(6, "Variable $var is undefined.")], []),
    ('echo "xxx {$var} xxx";', [(6, "Variable $var is undefined.")], []),
    ('echo "xxx ${var} xxx";', [(6, "Variable $var is undefined.")], []),
    ('echo "xxx $var $var2 xxx";',
     [(6, "Variable $var is undefined."), (6, "Variable $var2 is undefined.")],
     [(6, "Variable $var2 is undefined.")]),
    ('func($var);', [(6, "Variable $var is undefined.")], []),
    ('func(12, $var);', [(10, "Variable $var is undefined.")], []),
    ('func($var, 12);', [(6, "Variable $var is undefined.")], []),
    ('func(12, $var, 12);', [(10, "Variable $var is undefined.")], []),
]

FUNCTION_TEMPLATE = """<?php
function function_without_param() {
    BEFORE
    $var = 'set the var';
    AFTER
    return $var;
}
"""


@pytest.mark.parametrize("code,before,after", UNDEFINED_SNIPPETS)
def test_undefined_before_assignment(analyze, code, before, after):
    d = analyze(FUNCTION_TEMPLATE.replace("BEFORE", code).replace("AFTER", ""))
    assert d.warnings == []
    assert d.errors == sorted((3, col + 4, msg) for col, msg in before)

    d = analyze(FUNCTION_TEMPLATE.replace("BEFORE", "").replace("AFTER", code))
    assert d.warnings == []
    assert d.errors == sorted((5, col + 4, msg) for col, msg in after)


def test_param_read_and_reassigned(analyze):
    d = analyze("""
        <?php
        function function_with_param($param) {
            echo $param;
            echo "xxx $param xxx";
            echo "xxx {$param} xxx";
            $param = 'set the param';
            echo $param;
            return $param;
        }
    """)
    assert d.warnings == []
    assert d.errors == []


def test_inline_assignments(analyze):
    d = analyze("""
        <?php
        function function_with_inline_assigns() {
            echo $var;
            ($var = 12) && $var;
            echo $var;
            echo $var2;
            while ($var2 = whatever()) {
                echo $var2;
            }
            echo $var2;
        }
    """)
    assert d.warnings == []
    assert d.errors == [
        (3, 10, "Variable $var is undefined."),
        (6, 10, "Variable $var2 is undefined."),
    ]


def test_compound_assignment_is_a_read(analyze):
    d = analyze("<?php function f(){ $n += 1; $m = 0; $m .= 'x'; }")
    assert d.errors == [(1, 21, "Variable $n is undefined.")]
    assert d.warnings == []


def test_array_element_assignment_defines(analyze):
    d = analyze("<?php function f(){ $a[] = 1; $b['k'][0] = 2; return $a + $b; }")
    assert d.errors == []
    assert d.warnings == []


def test_list_destructuring(analyze):
    d = analyze("""
        <?php
        function f($pair) {
            list($a, $b) = $pair;
            [$c, [$d, $e]] = $pair;
            echo $a, $c, $d;
        }
    """)
    assert d.errors == []
    assert d.warnings == [
        (3, 14, "Unused variable $b."),
        (4, 15, "Unused variable $e."),
    ]


def test_array_literal_is_not_destructuring(analyze):
    d = analyze("<?php function f(){ $x = [$a, $b]; return $x; }")
    assert d.errors == [
        (1, 27, "Variable $a is undefined."),
        (1, 31, "Variable $b is undefined."),
    ]


def test_reference_assignment_creates_target(analyze):
    d = analyze("<?php function f(){ $a = &$b; return $a; }")
    assert d.errors == []

    d = analyze("<?php function f(){ $x = 1; $y = &$x; return $y; }")
    assert d.errors == []
    assert d.warnings == []


# ============================================================================
# foreach
# ============================================================================

def test_foreach_defined_array(analyze):
    d = analyze("""
        <?php
        function function_with_defined_foreach() {
            $array = array();
            foreach ($array as $element1) {
                echo $element1;
            }
            echo $element1;
            foreach ($array as &$element2) {
                echo $element2;
            }
            foreach ($array as $key1 => $value1) {
                echo "$key1 => $value1\\n";
            }
            foreach ($array as $element3) {
            }
            foreach ($array as &$element4) {
            }
            foreach ($array as $key3 => $value3) {
            }
        }
    """)
    assert d.errors == []
    assert d.warnings == [
        (14, 24, "Unused variable $element3."),
        (16, 25, "Unused variable $element4."),
        (18, 24, "Unused variable $key3."),
        (18, 33, "Unused variable $value3."),
    ]


def test_foreach_destructuring_target(analyze):
    d = analyze("<?php function f($rows){ foreach ($rows as [$id, $name]) { echo $id; } }")
    assert d.errors == []
    assert d.warnings == [(1, 50, "Unused variable $name.")]


# ============================================================================
# Classes, $this, self:: and static::
# ============================================================================

def test_this_outside_class(analyze):
    d = analyze("""
        <?php
        function function_with_this_outside_class() {
            return $this->whatever();
        }
    """)
    assert d.warnings == []
    assert d.errors == [(3, 12, "Variable $this is undefined.")]


def test_this_inside_closure_in_method(analyze):
    d = analyze("""
        <?php
        class ClassWithThisInsideClosure {
            function method_with_this_inside_closure() {
                echo $this;
                echo "$this";
                array_map(function ($inner_param) {
                        echo $this;
                        echo "$this";
                    }, array());
                echo $this;
                echo "$this";
            }
        }
    """)
    assert d.warnings == [(6, 29, "Unused function parameter $inner_param.")]
    assert d.errors == []


@pytest.mark.parametrize("code", [
    "<?php $f = fn() => $this; $f();",
    "<?php $f = function () { return $this; }; $f();",
    "<?php function f() { return fn() => $this->name; }",
])
def test_this_inside_unbound_anonymous_functions(analyze, code):
    d = analyze(code)
    assert d.errors == []
    assert d.warnings == []


def test_self_member_outside_class(analyze):
    d = analyze("""
        <?php
        function function_with_static_members_outside_class() {
            echo SomeOtherClass::$external_static_member_var;
            return self::$whatever;
        }
    """)
    assert d.warnings == []
    assert d.errors == [(4, 18, "Use of self::$whatever outside class definition.")]
    sources = {f.source for f in d.report.findings}
    assert sources == {SOURCE_SELF_OUTSIDE_CLASS}


def test_static_member_outside_class(analyze):
    d = analyze("""
        <?php
        function function_with_late_static_binding_outside_class() {
            echo static::$whatever;
        }
    """)
    assert d.errors == [(3, 18, "Use of static::$whatever outside class definition.")]
    assert d.report.findings[0].source == SOURCE_STATIC_OUTSIDE_CLASS


def test_members_never_flagged_inside_class(analyze):
    d = analyze("""
        <?php
        class ClassWithMembers {
            public $member_var;
            static $static_member_var;
            private $secret = 1;

            function method_with_member_var() {
                echo $this->member_var;
                echo $this->no_such_member_var;
                echo self::$static_member_var;
                echo self::$no_such_static_member_var;
                echo SomeOtherClass::$external_static_member_var;
                array_map(function () {
                        echo self::$static_member_var;
                    }, array());
            }
        }
    """)
    assert d.errors == []
    assert d.warnings == []


def test_late_static_binding_in_class(analyze):
    d = analyze("""
        <?php
        class ClassWithLateStaticBinding {
            static function method_with_late_static_binding($param) {
                static::some_method($param);
                static::some_method($var);
                static::some_method(static::CONSTANT, $param);
            }
        }
    """)
    assert d.warnings == []
    assert d.errors == [(5, 29, "Variable $var is undefined.")]


def test_symbolic_property_and_method_names(analyze):
    d = analyze("""
        <?php
        class ClassWithSymbolicRefProperty {
            function method_with_symbolic_ref_property() {
                $properties = array('my_property');
                foreach ($properties as $property) {
                    $this->$property = 'some value';
                    $this->$undefined_property = 'some value';
                }
            }

            function method_with_symbolic_ref_method() {
                $methods = array('m');
                foreach ($methods as $method) {
                    $this->$method();
                    $this -> $undefined_method();
                }
            }
        }
    """)
    assert d.warnings == []
    assert d.errors == [
        (7, 20, "Variable $undefined_property is undefined."),
        (15, 22, "Variable $undefined_method is undefined."),
    ]


def test_promoted_constructor_parameters(analyze):
    d = analyze("""
        <?php
        class Point {
            public function __construct(public int $x, protected int $y, int $z) {
            }
        }
    """)
    assert d.warnings == [(3, 70, "Unused function parameter $z.")]


def test_anonymous_class_arguments_are_reads(analyze):
    d = analyze("""
        <?php
        function f() {
            return new class($missing) {
                public $prop;
                public function get() { return $this->prop; }
            };
        }
    """)
    assert d.errors == [(3, 22, "Variable $missing is undefined.")]
    assert d.warnings == []


def test_abstract_and_interface_methods_have_no_body(analyze):
    d = analyze("""
        <?php
        interface Shape {
            public function area($scale);
        }
        abstract class Base {
            abstract protected function build(array $opts);
        }
    """)
    assert d.warnings == []
    assert d.errors == []


# ============================================================================
# Closures and arrow functions
# ============================================================================

def test_closure_scoping(analyze):
    d = analyze("""
        <?php
        function function_with_closure($outer_param) {
            $outer_var  = 1;
            $outer_var2 = 2;
            array_map(function ($inner_param) {
                    $inner_var = 1;
                    echo $outer_param;
                    echo $inner_param;
                    echo $outer_var;
                    echo $outer_var2;
                    echo $inner_var;
                }, array());
            array_map(function () use ($outer_var, $outer_var3, &$outer_param) {
                    $inner_var2 = 2;
                    echo $outer_param;
                    echo $inner_param;
                    echo $outer_var;
                    echo $outer_var2;
                    echo $outer_var3;
                    echo $inner_var;
                    echo $inner_var2;
                }, array());
            echo $outer_var;
            echo $outer_var2;
            echo $outer_var3;
            echo $inner_param;
            echo $inner_var;
            echo $inner_var2;
        }
    """)
    assert d.warnings == []
    assert d.errors == [
        (7, 18, "Variable $outer_param is undefined."),
        (9, 18, "Variable $outer_var is undefined."),
        (10, 18, "Variable $outer_var2 is undefined."),
        (13, 44, "Variable $outer_var3 is undefined."),
        (16, 18, "Variable $inner_param is undefined."),
        (18, 18, "Variable $outer_var2 is undefined."),
        (19, 18, "Variable $outer_var3 is undefined."),
        (20, 18, "Variable $inner_var is undefined."),
        (25, 10, "Variable $outer_var3 is undefined."),
        (26, 10, "Variable $inner_param is undefined."),
        (27, 10, "Variable $inner_var is undefined."),
        (28, 10, "Variable $inner_var2 is undefined."),
    ]


def test_closure_by_reference_import_of_new_variable(analyze):
    d = analyze("""
        <?php
        function f() {
            $collect = function ($item) use (&$items) {
                $items[] = $item;
            };
            $collect(1);
            return $items;
        }
    """)
    assert d.errors == []
    assert d.warnings == []


def test_assigned_reference_import_is_not_unused(analyze):
    d = analyze("""
        <?php
        function f() {
            $total = 0;
            $reset = function () use (&$total, $unused_copy) {
                $total = 5;
            };
            $reset();
            return $total;
        }
    """)
    assert d.errors == [(4, 40, "Variable $unused_copy is undefined.")]
    assert d.warnings == []


def test_reference_import_assigned_after_static_redeclaration(analyze):
    d = analyze("""
        <?php
        function f() {
            $n = 0;
            $g = function () use (&$n) {
                static $n;
                $n = 1;
            };
            $g();
            return $n;
        }
    """)
    assert d.warnings == [
        (5, 16, "Redeclaration of bound variable $n as static variable."),
    ]
    assert d.errors == []


def test_arrow_function_captures_enclosing_scope(analyze):
    d = analyze("""
        <?php
        function f($list) {
            $factor = 2;
            return array_map(fn($x) => $x * $factor + $missing, $list);
        }
    """)
    assert d.errors == [(4, 47, "Variable $missing is undefined.")]
    assert d.warnings == []


def test_unused_arrow_parameter(analyze):
    d = analyze("<?php $f = fn($a, $b) => $a; echo $f(1, 2);")
    assert d.warnings == [(1, 19, "Unused function parameter $b.")]


# ============================================================================
# Static variables
# ============================================================================

def test_static_declarations_with_heredoc_and_nowdoc(analyze):
    code = (
        "<?php\n"
        "function function_with_static_var() {\n"
        "    static $static1, $static_num = 12, $static_neg_num = -1.5, "
        "$static_string = 'abc', $static_string2 = \"def\", $static_define = MYDEFINE, "
        "$static_constant = MyClass::CONSTANT, $static2;\n"
        "    static $static_heredoc = <<<END_OF_HEREDOC\n"
        "this is an ugly but valid way to continue after a heredoc\n"
        "END_OF_HEREDOC\n"
        "        , $static3;\n"
        "    static $static_nowdoc = <<<'END_OF_NOWDOC'\n"
        "this is an ugly but valid way to continue after a nowdoc $nope\n"
        "END_OF_NOWDOC\n"
        "        , $static4;\n"
        "    echo $static1;\n"
        "    echo $static_num;\n"
        "    echo $static2;\n"
        "    echo $var;\n"
        "    echo $static_heredoc;\n"
        "    echo $static3;\n"
        "    echo $static_nowdoc;\n"
        "    echo $static4;\n"
        "}\n"
    )
    d = analyze(code)
    assert d.warnings == [
        (3, 40, "Unused variable $static_neg_num."),
        (3, 64, "Unused variable $static_string."),
        (3, 88, "Unused variable $static_string2."),
        (3, 113, "Unused variable $static_define."),
        (3, 140, "Unused variable $static_constant."),
    ]
    assert d.errors == [(15, 10, "Variable $var is undefined.")]


def test_static_property_and_static_call_are_not_statements(analyze):
    d = analyze("""
        <?php
        class C {
            public static $count = 0;
            public static function make() { return new static(); }
        }
        $fn = static fn() => 1;
        echo $fn;
    """)
    assert d.warnings == []
    assert d.errors == []


def test_closing_tag_ends_global_statement(analyze):
    d = analyze("<?php function f() { global $a ?>\n<?php echo $b; }")
    assert d.warnings == [(1, 29, "Unused global variable $a.")]
    assert d.errors == [(2, 12, "Variable $b is undefined.")]


def test_closing_tag_ends_static_statement(analyze):
    d = analyze("<?php function f() { static $s ?>\n<?php echo $s, $b; }")
    assert d.warnings == []
    assert d.errors == [(2, 16, "Variable $b is undefined.")]


# ============================================================================
# Redeclarations
# ============================================================================

def test_global_redeclarations(analyze):
    d = analyze("""
        <?php
        function function_with_global_redeclarations($param) {
            global $global;
            static $static;
            $bound = 12;
            $local = function () use ($bound) {
                    global $bound;
                    echo $bound;
                };
            try {
            } catch (Exception $e) {
            }
            echo "$param $global $static $bound $local $e\\n";
            global $param;
            global $static;
            global $bound;
            global $local;
            global $e;
        }
    """)
    assert d.warnings == [
        (7, 20, "Redeclaration of bound variable $bound as global variable."),
        (14, 12, "Redeclaration of function parameter $param as global variable."),
        (15, 12, "Redeclaration of static variable $static as global variable."),
        (16, 12, "Redeclaration of variable $bound as global variable."),
        (17, 12, "Redeclaration of variable $local as global variable."),
        (18, 12, "Redeclaration of variable $e as global variable."),
    ]
    assert d.errors == []
    assert {f.source for f in d.report.findings} == {SOURCE_REDECLARATION}


def test_static_redeclarations(analyze):
    d = analyze("""
        <?php
        function function_with_static_redeclarations($param) {
            global $global;
            static $static, $static;
            $bound = 12;
            $local = function () use ($bound) {
                    static$bound;
                    echo $bound;
                };
            try {
            } catch (Exception $e) {
            }
            echo "$param $global $static $bound $local $e\\n";
            static $param;
            static $static;
            static $bound;
            static $local;
            static $e;
        }
    """)
    assert d.warnings == [
        (4, 21, "Redeclaration of static variable $static as static variable."),
        (7, 19, "Redeclaration of bound variable $bound as static variable."),
        (14, 12, "Redeclaration of function parameter $param as static variable."),
        (15, 12, "Redeclaration of static variable $static as static variable."),
        (16, 12, "Redeclaration of variable $bound as static variable."),
        (17, 12, "Redeclaration of variable $local as static variable."),
        (18, 12, "Redeclaration of variable $e as static variable."),
    ]
    assert d.errors == []


def test_redeclared_param_is_still_defined(analyze):
    d = analyze("<?php function f($p){ global $p; echo $p; }")
    assert d.warnings == [
        (1, 30, "Redeclaration of function parameter $p as global variable."),
    ]
    assert d.errors == []


def test_catch_variables(analyze):
    d = analyze("""
        <?php
        function function_with_try_catch() {
            echo $e;
            $var = 1;
            echo $var;
            try {
                echo $e;
                echo $var;
            } catch (Exception $e) {
                echo $e;
                echo $var;
            }
            try {
            } catch (Exception $e) {
                echo $e;
            }
            echo $e;
        }
    """)
    assert d.warnings == []
    assert d.errors == [
        (3, 10, "Variable $e is undefined."),
        (7, 14, "Variable $e is undefined."),
    ]


def test_catch_redeclares_param(analyze):
    d = analyze("<?php function f($e){ echo $e; try {} catch (Exception $e) { echo $e; } }")
    assert d.warnings == [
        (1, 56, "Redeclaration of function parameter $e as variable."),
    ]


# ============================================================================
# By-reference contexts
# ============================================================================

def test_pass_by_reference_param(analyze):
    d = analyze("<?php function f(&$param) { echo $param; }")
    assert d.warnings == []
    assert d.errors == []


def test_pass_by_reference_param_assigned_only(analyze):
    d = analyze("""
        <?php
        function function_with_pass_by_ref_assign_only_arg(&$return_value) {
            $return_value = 42;
        }
    """)
    assert d.warnings == []
    assert d.errors == []


def test_return_by_reference_function(analyze):
    d = analyze("""
        <?php
        function &function_with_return_by_reference_and_param($param) {
            echo $param;
            return $param;
        }
    """)
    assert d.warnings == []
    assert d.errors == []


def test_pass_by_reference_calls(analyze):
    d = analyze("""
        <?php
        function function_with_pass_by_reference_calls() {
            echo $matches;
            echo $needle;
            echo $haystack;
            preg_match('/(abc)/', 'defabcghi', $matches);
            preg_match($needle,   'defabcghi', $matches);
            preg_match('/(abc)/', $haystack,   $matches);
            echo $matches;
            echo $needle;
            echo $haystack;
            $stmt = 'whatever';
            $var1 = 'one';
            $var2 = 'two';
            echo $var1;
            echo $var2;
            echo $var3;
            maxdb_stmt_bind_result($stmt, $var1, $var2, $var3);
            echo $var1;
            echo $var2;
            echo $var3;
        }
    """)
    assert d.warnings == []
    assert d.errors == [
        (3, 10, "Variable $matches is undefined."),
        (4, 10, "Variable $needle is undefined."),
        (5, 10, "Variable $haystack is undefined."),
        (7, 16, "Variable $needle is undefined."),
        (8, 27, "Variable $haystack is undefined."),
        (10, 10, "Variable $needle is undefined."),
        (11, 10, "Variable $haystack is undefined."),
        (17, 10, "Variable $var3 is undefined."),
    ]


def test_method_named_like_by_reference_function(analyze):
    d = analyze("<?php function f($o){ $o->preg_match('x', 'y', $m); }")
    assert d.errors == [(1, 48, "Variable $m is undefined.")]


def test_configured_by_reference_function(analyze):
    code = "<?php function f(){ my_fill($out); return $out; }"
    assert analyze(code).errors == [
        (1, 29, "Variable $out is undefined."),
        (1, 43, "Variable $out is undefined."),
    ]
    config = AnalyzerConfig(by_reference_functions={"my_fill": [1]})
    d = analyze(code, config)
    assert d.errors == []
    assert d.warnings == []


# ============================================================================
# Superglobals, heredocs, compact()
# ============================================================================

def test_superglobals(analyze):
    d = analyze("""
        <?php
        function function_with_superglobals() {
            echo print_r($GLOBALS, true);
            echo print_r($_SERVER, true);
            echo print_r($_GET, true);
            echo print_r($_POST, true);
            echo print_r($_FILES, true);
            echo print_r($_COOKIE, true);
            echo print_r($_SESSION, true);
            echo print_r($_REQUEST, true);
            echo print_r($_ENV, true);
            echo "{$GLOBALS['whatever']}";
            echo "{$GLOBALS['whatever']} $var";
            $_SESSION['k'] = 1;
        }
    """)
    assert d.warnings == []
    assert d.errors == [(13, 10, "Variable $var is undefined.")]


def test_heredoc_interpolation(analyze):
    code = (
        "<?php\n"
        "function function_with_heredoc() {\n"
        "    $var = 10;\n"
        "    echo <<<END_OF_TEXT\n"
        "$var\n"
        "{$var}\n"
        "${var}\n"
        "$var2\n"
        "{$var2}\n"
        "${var2}\n"
        "\\$var2\n"
        "\\\\$var2\n"
        "END_OF_TEXT;\n"
        "}\n"
    )
    d = analyze(code)
    assert d.warnings == []
    assert d.errors == [
        (8, 1, "Variable $var2 is undefined."),
        (9, 1, "Variable $var2 is undefined."),
        (10, 1, "Variable $var2 is undefined."),
        (12, 1, "Variable $var2 is undefined."),
    ]


def test_nowdoc_is_not_interpolated(analyze):
    code = "<?php\nfunction f() {\n    echo <<<'EOT'\n$nothing\nEOT;\n}\n"
    d = analyze(code)
    assert d.errors == []


def test_single_quoted_compact(analyze):
    d = analyze("""
        <?php
        function function_with_literal_compact($param1, $param2, $param3, $param4) {
            $var1 = 'value1';
            $var2 = 'value2';
            $var4 = 'value4';
            $squish = compact('var1');
            $squish = compact('var3');
            $squish = compact('param1');
            $squish = compact('var2', 'param3');
            $squish = compact(array('var4'), array('param4', 'var5'));
            echo $squish;
        }
    """)
    assert d.warnings == [(2, 49, "Unused function parameter $param2.")]
    assert d.errors == [
        (7, 23, "Variable $var3 is undefined."),
        (10, 54, "Variable $var5 is undefined."),
    ]


def test_expression_compact(analyze):
    d = analyze("""
        <?php
        function function_with_expression_compact($param1, $param2, $param3, $param4) {
            $var1 = "value1";
            $var2 = "value2";
            $var4 = "value4";
            $var6 = "value6";
            $var7 = "value7";
            $var8 = "value8";
            $var9 = "value9";
            $squish = compact("var1");
            $squish = compact("var3");
            $squish = compact("param1");
            $squish = compact("var2", "param3");
            $squish = compact(array("var4"), array("param4", "var5"));
            $squish = compact($var6);
            $squish = compact("var" . "7");
            $squish = compact("blah $var8");
            $squish = compact("$var9");
            echo $squish;
        }
    """)
    assert d.warnings == [
        (2, 52, "Unused function parameter $param2."),
        (7, 5, "Unused variable $var7."),
    ]
    assert d.errors == [
        (11, 23, "Variable $var3 is undefined."),
        (14, 54, "Variable $var5 is undefined."),
    ]


def test_short_array_compact(analyze):
    d = analyze("<?php function f(){ $a = 1; return compact(['a', 'b']); }")
    assert d.warnings == []
    assert d.errors == [(1, 50, "Variable $b is undefined.")]


# ============================================================================
# Configuration & reporting
# ============================================================================

def test_ignore_unused_names_pattern(analyze):
    code = "<?php function f($_ctx, $used){ $_tmp = 1; return $used; }"
    assert len(analyze(code).warnings) == 2
    d = analyze(code, AnalyzerConfig(ignore_unused_names=r"^_"))
    assert d.warnings == []


def test_ignore_unused_predicate(analyze):
    config = AnalyzerConfig(ignore_unused=lambda info: info.scope_type is ScopeType.PARAM)
    d = analyze("<?php function f($a){ $b = 1; }", config)
    assert d.warnings == [(1, 23, "Unused variable $b.")]


def test_visibility_can_be_reported(analyze):
    code = """
        <?php
        class P { public function __construct(public $a) {} }
    """
    assert analyze(code).warnings == []
    d = analyze(code, AnalyzerConfig(treat_visibility_as_used=False))
    assert d.warnings == [(2, 46, "Unused function parameter $a.")]


def test_report_structure():
    report = analyze_source("<?php function f($a){ echo $b; }")
    assert report.warning_count == 1
    assert report.error_count == 1
    assert [m.source for m in report.errors[1][28]] == [SOURCE_UNDEFINED]
    assert [m.source for m in report.warnings[1][18]] == [SOURCE_UNUSED]
    msg = report.errors[1][28][0]
    assert msg.severity == 5
    assert msg.fixable is False
    assert report.findings[0].severity is Severity.ERROR


def test_analysis_is_idempotent():
    source = "<?php function f($a, $b){ global $g; echo $a, $c, \"$d\"; }\n$x = 1;\n"
    tokens = tokenize(source)
    analyzer = VariableAnalyzer()
    first = analyzer.analyze(tokens)
    second = analyzer.analyze(tokens)
    assert first.findings == second.findings
    assert first.findings


# ============================================================================
# Building blocks
# ============================================================================

def test_registry_declare_initialize_read():
    registry = VariableRegistry()
    pos = Position(1, 1)
    info = registry.initialize("a", pos)
    assert info.scope_type is ScopeType.LOCAL
    assert info.first_declared == pos
    assert info.first_initialized == pos
    registry.read("a", Position(2, 1))
    registry.read("a", Position(3, 1))
    assert info.first_read == Position(2, 1)
    assert registry.read("missing", pos) is None
    assert "a" in registry and "missing" not in registry


def test_registry_declare_keeps_first_position():
    registry = VariableRegistry()
    registry.declare("p", ScopeType.PARAM, Position(1, 5), pass_by_ref=True)
    info = registry.declare("p", ScopeType.STATIC, Position(4, 1))
    assert info.scope_type is ScopeType.STATIC
    assert info.first_declared == Position(1, 5)
    assert info.pass_by_reference


def test_variable_info_visibility():
    assert VariableInfo("x", visibility="public").is_ignore_unused()
    assert VariableInfo("x", visibility="protected").is_ignore_unused()
    assert not VariableInfo("x", visibility="private").is_ignore_unused()
    assert VariableInfo("x", ignore_unused=True).is_ignore_unused()


def test_scope_stack_underflow():
    stack = ScopeStack(Scope(ScopeKind.FILE, opener=-1, closer=None))
    stack.push(Scope(ScopeKind.FUNCTION, opener=3, closer=9, parent=stack.current))
    assert stack.pop().kind is ScopeKind.FUNCTION
    with pytest.raises(ScopeStackUnderflow):
        stack.pop()


def test_missing_classifier_aborts_analysis():
    analyzer = VariableAnalyzer()
    del analyzer._dispatch[TokenKind.SEMICOLON]
    with pytest.raises(UnhandledTokenError) as exc:
        analyzer.analyze_source("<?php $a = 1;")
    assert isinstance(exc.value, AnalysisError)
    assert "SEMICOLON" in str(exc.value)


def test_dispatch_covers_every_token_kind():
    analyzer = VariableAnalyzer()
    assert set(analyzer._dispatch) == set(TokenKind)


def test_interpolated_variables_skips_escaped():
    found = list(interpolated_variables('"$a \\$b \\\\$c {$d} ${e}\n$f"'))
    assert found == [("a", 0), ("c", 0), ("d", 0), ("e", 0), ("f", 1)]


def test_takes_reference_spread_slots():
    config = AnalyzerConfig()
    assert config.takes_reference("sscanf", 3)
    assert config.takes_reference("sscanf", 7)
    assert not config.takes_reference("sscanf", 2)
    assert config.takes_reference("PREG_MATCH", 3)
    assert config.takes_reference("\\exec", 3)
    assert not config.takes_reference("strlen", 1)
