from ssh_shell_manager.command_executor import detect_prompt, normalize_command, strip_ansi
from ssh_shell_manager.datastructures import DEFAULT_PROMPT_PATTERNS


def test_prompt_on_last_line_is_detected():
    chunk = "total 0\ndrwxr-xr-x  2 root root 4096 Jan 1 00:00 .\n[root@host ~]# "
    assert detect_prompt(chunk, ["]# "], smart_detection=True)


def test_prompt_text_inside_output_is_not_detected():
    chunk = 'echo "]# "\n]# \nstill running'
    assert not detect_prompt(chunk, ["]# "], smart_detection=True)


def test_simple_detection_matches_anywhere():
    chunk = 'echo "]# "\n]# \nstill running'
    assert detect_prompt(chunk, ["]# "], smart_detection=False)
    assert not detect_prompt("no prompt here", ["]# "], smart_detection=False)


def test_trailing_whitespace_is_ignored_on_both_sides():
    assert detect_prompt("u@test:~$ ", ["$ "])
    assert detect_prompt("u@test:~$   \r", ["$ "])
    assert detect_prompt("router>  ", ["> "])


def test_ansi_escapes_are_stripped_before_matching():
    chunk = "output\n\x1b]0;u@test: ~\x07\x1b[01;32mu@test\x1b[00m:~\x1b[01;34m$\x1b[00m "
    assert detect_prompt(chunk, ["$ "])


def test_empty_last_line_or_patterns_never_match():
    assert not detect_prompt("line\n", DEFAULT_PROMPT_PATTERNS)
    assert not detect_prompt("", DEFAULT_PROMPT_PATTERNS)
    assert not detect_prompt("u@test:~$ ", ["", "   "])
    assert not detect_prompt("u@test:~$ ", ["", "   "], smart_detection=False)


def test_default_patterns_cover_common_shells():
    for chunk in ("[root@host ~]# ", "user@box:~$ ", "switch> ", "root@box:/# ", "mac% "):
        assert detect_prompt(chunk, DEFAULT_PROMPT_PATTERNS), chunk


def test_strip_ansi_removes_color_and_title_sequences():
    assert strip_ansi("\x1b[01;31mred\x1b[m\x1b[K") == "red"
    assert strip_ansi("\x1b]0;title\x07text") == "text"


def test_normalize_command_appends_exactly_one_newline():
    assert normalize_command("ls") == "ls\n"
    assert normalize_command("ls\n") == "ls\n"
    assert normalize_command("ls\r\n") == "ls\n"
    assert normalize_command("") == "\n"


def test_chunk_ending_on_bare_prompt_character_is_not_a_prompt():
    assert not detect_prompt("<html>\n<body>", ["> "])
    assert not detect_prompt("u@test:~$", ["$ "])
    assert not detect_prompt("total: 40%", DEFAULT_PROMPT_PATTERNS)
