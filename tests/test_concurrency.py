from interpreter import MODE_SCRIPT, TYPE_LIST, TYPE_NUMBER, Interpreter, Value


def num(x):
    return Value(TYPE_NUMBER, float(x))


def make(**kwargs):
    out = []
    interp = Interpreter(mode=MODE_SCRIPT, output_sink=out.append, **kwargs)
    return interp, out


def join_all(interp):
    for thread in interp.spawned:
        thread.join(timeout=10)
        assert not thread.is_alive()


def test_thread_does_not_touch_parent_state():
    interp, out = make()
    interp.evaluate_program("1 (x) var (2 (x) var x println 99) thread x")
    join_all(interp)
    assert interp.stack == [num(1)]
    assert interp.env.get_optional("x") == num(1)
    assert out == ["2\n"]


def test_thread_sees_a_snapshot_of_the_stack():
    interp, out = make()
    interp.evaluate_program("7 (size-stack println) thread 8")
    join_all(interp)
    assert out == ["1\n"]
    assert interp.stack == [num(7), num(8)]


def test_clone_is_deep():
    interp, _ = make()
    interp.evaluate_program("[1 2] (xs) var [3]")
    twin = interp.clone()
    twin.evaluate_program("xs 4 append (xs) var")
    twin.stack[0].value.append(num(9))
    assert interp.env.get_optional("xs") == Value(TYPE_LIST, [num(1), num(2)])
    assert interp.stack == [Value(TYPE_LIST, [num(3)])]


def test_clone_shares_configuration():
    interp, out = make(argv=["prog"], max_depth=20)
    twin = interp.clone()
    assert twin.services is interp.services
    assert twin.output_sink is interp.output_sink
    assert twin.argv == ["prog"]
    assert twin.max_depth == 20


def test_many_threads_run_independently():
    interp, out = make()
    interp.evaluate_program("[1 2 3] (n) ((n println) thread) for")
    join_all(interp)
    assert len(interp.spawned) == 3
    assert sorted(out) == ["1\n", "2\n", "3\n"]


def test_clone_copies_deeply_nested_lists():
    interp, _ = make()
    interp.evaluate_program("[] (l) var 0 (i) var (l [] swap append (l) var i 1 add (i) var) (i 1500 less) while")
    twin = interp.clone()
    original = interp.env.get_optional("l")
    copied = twin.env.get_optional("l")
    assert copied is not original
    assert twin.display(copied) == interp.display(original)
