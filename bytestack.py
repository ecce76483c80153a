#!/usr/bin/env python3
"""
bytestack.py — an interpreter for a tiny Forth-like byte-stack language.

No loops. No heap. Just a byte stack, a call stack, and a label table.

Architecture:
  - Tokenizer: one instruction per source line, '#' starts a comment
  - Resolver: backpatch IF/ELSE/THEN jump targets, build the label table,
    reject bad structure and undefined calls before anything runs
  - Machine: walk the resolved code with an explicit IP; CALL/RETURN use
    an explicit call stack, never Python recursion

Instruction set (every value is a byte, arithmetic wraps mod 256):
  push n        push n (0..255)
  pop           ( a -- )
  dup           ( a -- a a )
  swap          ( a b -- b a )
  rotate        ( a b c -- b c a )
  over          ( a b -- a b a )
  pick n        copy the nth item from the top (pick 1 = dup, pick 2 = over)
  add, sub      ( a b -- a+b )  ( a b -- a-b )
  print_byte    pop and print as a decimal number
  print_char    pop and print as one raw byte
  if            peek top; zero skips to the matching else/then
  else, then
  name:         label; entry point of subroutine `name`
  name          call subroutine `name`
  return        return to the caller; at top level it ends the program
  halt          stop
"""

import argparse
import re
import sys
from collections import namedtuple


# ── Errors ────────────────────────────────────────────────────────────────────

class BytestackError(Exception):
    def __init__(self, message: str, line: int | None = None):
        self.message = message
        self.line = line
        super().__init__(f'line {line}: {message}' if line is not None else message)


class LoadError(BytestackError):
    """Program rejected before a single instruction ran."""


class LexError(LoadError):
    def __init__(self, line: int, reason: str):
        self.reason = reason
        super().__init__(reason, line)


class StructureError(LoadError):
    pass


class DuplicateLabelError(LoadError):
    def __init__(self, name: str, line: int):
        self.name = name
        super().__init__(f"duplicate label '{name}'", line)


class UndefinedSubroutineError(LoadError):
    def __init__(self, name: str, line: int):
        self.name = name
        super().__init__(f"call to undefined label '{name}'", line)


STACK_UNDERFLOW     = 'StackUnderflow'
STACK_OVERFLOW      = 'StackOverflow'
CALL_STACK_OVERFLOW = 'CallStackOverflow'
STEP_LIMIT          = 'StepLimitExceeded'

KIND_TEXT = {
    STACK_UNDERFLOW:     'Stack underflow',
    STACK_OVERFLOW:      'Stack overflow',
    CALL_STACK_OVERFLOW: 'Call stack overflow',
    STEP_LIMIT:          'Step limit exceeded',
}


class ExecutionError(BytestackError):
    """Raised by the machine; `index` is the failing instruction's position."""
    def __init__(self, kind: str, index: int, instr):
        self.kind = kind
        self.index = index
        self.instr = instr
        super().__init__(f"{KIND_TEXT[kind]} at '{format_instr(instr)}'", instr.line)


# ── Tokenizer ─────────────────────────────────────────────────────────────────

Instr = namedtuple('Instr', 'op arg line')

KEYWORDS = {
    'push': 'PUSH', 'pop': 'POP', 'dup': 'DUP', 'swap': 'SWAP',
    'rotate': 'ROTATE', 'over': 'OVER', 'pick': 'PICK',
    'add': 'ADD', 'sub': 'SUB',
    'print_byte': 'PRINT_BYTE', 'print_char': 'PRINT_CHAR',
    'halt': 'HALT', 'if': 'IF', 'else': 'ELSE', 'then': 'THEN',
    'return': 'RETURN',
}
WITH_OPERAND = ('PUSH', 'PICK')

_NUMBER = re.compile(r'[0-9]+')
_NAME   = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')


def parse_byte(word: str, line: int) -> int:
    if not _NUMBER.fullmatch(word):
        raise LexError(line, f"invalid argument '{word}'")
    digits = word.lstrip('0') or '0'
    if len(digits) > 3 or int(digits) > 255:
        shown = digits if len(digits) <= 8 else digits[:8] + '...'
        raise LexError(line, f'argument {shown} out of range 0..255')
    return int(digits)


def tokenize(src: str):
    """Yield one Instr per non-blank, non-comment line."""
    for lineno, raw in enumerate(src.split('\n'), 1):
        raw = raw.rstrip('\r')
        text = raw.split('#', 1)[0].strip()
        if not text:
            continue
        head, *rest = text.split()
        op = KEYWORDS.get(head)

        if op in WITH_OPERAND:
            if not rest:
                raise LexError(lineno, f"missing argument for '{head}'")
            if len(rest) > 1:
                raise LexError(lineno, f"unexpected '{rest[1]}' after '{head} {rest[0]}'")
            n = parse_byte(rest[0], lineno)
            yield Instr(op, n, lineno)
            continue

        if rest:
            if op:
                raise LexError(lineno, f"'{head}' takes no argument, got '{rest[0]}'")
            raise LexError(lineno, f"unknown instruction '{text}'")

        if op:
            yield Instr(op, None, lineno)
        elif head.endswith(':'):
            name = head[:-1]
            if not _NAME.fullmatch(name) or name in KEYWORDS:
                raise LexError(lineno, f"invalid label name '{name}'")
            yield Instr('LABEL', name, lineno)
        elif _NAME.fullmatch(head):
            yield Instr('CALL', head, lineno)
        else:
            raise LexError(lineno, f"unknown instruction '{head}'")


# ── Resolver ──────────────────────────────────────────────────────────────────

class Program:
    """Resolved code and label table. Execution never modifies it.

    IF.arg   = (alt, end): index of the matching ELSE (or THEN), and of THEN
    ELSE.arg = index of the matching THEN
    labels   = name -> index of the first instruction after the label
    """
    def __init__(self, code, labels: dict):
        self.code = tuple(code)
        self.labels = dict(labels)

    def __len__(self):
        return len(self.code)


def resolve(instrs) -> Program:
    code = list(instrs)
    labels = {}
    ctrl = []     # pending IF / ELSE indices
    owner = {}    # ELSE index -> its IF index

    for i, ins in enumerate(code):
        op = ins.op
        if op == 'IF':
            ctrl.append(i)

        elif op == 'ELSE':
            if not ctrl:
                raise StructureError('else without if', ins.line)
            if code[ctrl[-1]].op == 'ELSE':
                raise StructureError('multiple else for one if', ins.line)
            ia = ctrl.pop()
            code[ia] = code[ia]._replace(arg=(i, None))
            owner[i] = ia
            ctrl.append(i)

        elif op == 'THEN':
            if not ctrl:
                raise StructureError('then without if', ins.line)
            a = ctrl.pop()
            if code[a].op == 'IF':
                code[a] = code[a]._replace(arg=(i, i))
            else:
                code[a] = code[a]._replace(arg=i)
                ia = owner[a]
                code[ia] = code[ia]._replace(arg=(a, i))

        elif op == 'LABEL':
            if ins.arg in labels:
                raise DuplicateLabelError(ins.arg, ins.line)
            labels[ins.arg] = i + 1

    if ctrl:
        pending = ctrl[-1]
        raise StructureError('unclosed if', code[owner.get(pending, pending)].line)

    for ins in code:
        if ins.op == 'CALL' and ins.arg not in labels:
            raise UndefinedSubroutineError(ins.arg, ins.line)

    return Program(code, labels)


def load(src: str) -> Program:
    return resolve(tokenize(src))


# ── Machine ───────────────────────────────────────────────────────────────────

Options = namedtuple('Options', 'stack_size max_call_depth max_steps trace',
                     defaults=(None, None, None, None))


class Machine:
    def __init__(self, program: Program, options: Options | None = None, sink=None):
        self.program = program
        self.code    = program.code
        self.options = options or Options()
        self.sink    = sink
        self.ds:  list = []
        self.rs:  list = []
        self.ip       = 0
        self.steps    = 0
        self.halted   = False
        self.reason: str | None = None   # 'halt', 'end' or 'return'
        self.out      = bytearray()

    # ── I/O ───────────────────────────────────────────────────────────────────

    def _emit(self, data: bytes):
        self.out += data
        if self.sink is not None:
            self.sink(data)

    # ── Stack ─────────────────────────────────────────────────────────────────

    def _fail(self, kind):
        raise ExecutionError(kind, self.ip, self.code[self.ip])

    def _need(self, n):
        if len(self.ds) < n:
            self._fail(STACK_UNDERFLOW)

    def _pop(self):
        self._need(1)
        return self.ds.pop()

    def _push(self, value):
        limit = self.options.stack_size
        if limit is not None and len(self.ds) >= limit:
            self._fail(STACK_OVERFLOW)
        self.ds.append(value & 0xFF)

    def _stop(self, reason):
        self.halted = True
        self.reason = reason

    # ── Public ────────────────────────────────────────────────────────────────

    @property
    def stack(self) -> list:
        return list(self.ds)

    def run(self):
        while not self.halted:
            self.step()
        return self

    def step(self):
        if self.halted:
            return
        if self.ip >= len(self.code):
            self._stop('end')
            return
        limit = self.options.max_steps
        if limit is not None and self.steps >= limit:
            self._fail(STEP_LIMIT)
        if self.options.trace is not None:
            self.options.trace(self)

        ins = self.code[self.ip]
        op, arg = ins.op, ins.arg
        ds = self.ds
        self.steps += 1

        if op == 'PUSH':
            self._push(arg)

        elif op == 'POP':
            self._pop()

        elif op == 'DUP':
            self._need(1); self._push(ds[-1])

        elif op == 'SWAP':
            self._need(2); ds[-1], ds[-2] = ds[-2], ds[-1]

        elif op == 'ROTATE':
            self._need(3); ds.append(ds.pop(-3))

        elif op == 'OVER':
            self._need(2); self._push(ds[-2])

        elif op == 'PICK':
            if arg == 0:
                self._fail(STACK_UNDERFLOW)
            self._need(arg); self._push(ds[-arg])

        elif op in ('ADD', 'SUB'):
            self._need(2)
            b = ds.pop(); a = ds.pop()
            self._push(a + b if op == 'ADD' else a - b)

        elif op == 'PRINT_BYTE':
            self._emit(str(self._pop()).encode('ascii'))

        elif op == 'PRINT_CHAR':
            self._emit(bytes([self._pop()]))

        elif op == 'HALT':
            self._stop('halt')
            return

        elif op == 'IF':
            self._need(1)
            if ds[-1] == 0:
                self.ip = arg[0] + 1; return

        elif op == 'ELSE':
            self.ip = arg + 1; return

        elif op in ('THEN', 'LABEL'):
            pass

        elif op == 'CALL':
            depth = self.options.max_call_depth
            if depth is not None and len(self.rs) >= depth:
                self._fail(CALL_STACK_OVERFLOW)
            self.rs.append(self.ip + 1)
            self.ip = self.program.labels[arg]; return

        elif op == 'RETURN':
            if not self.rs:
                self._stop('return')
                return
            self.ip = self.rs.pop(); return

        else:
            raise ValueError(f'Bad instruction: {op}')

        self.ip += 1


# ── Running source ────────────────────────────────────────────────────────────

RunResult = namedtuple('RunResult', 'ok output stack reason error')


def run_source(src: str, options: Options | None = None, sink=None) -> RunResult:
    """Load and run `src`. Language errors come back in the result, not raised."""
    try:
        program = load(src)
    except LoadError as e:
        return RunResult(False, b'', [], None, e)
    m = Machine(program, options, sink)
    try:
        m.run()
    except ExecutionError as e:
        return RunResult(False, bytes(m.out), m.stack, None, e)
    return RunResult(True, bytes(m.out), m.stack, m.reason, None)


# ── Disassembly ───────────────────────────────────────────────────────────────

def format_instr(ins) -> str:
    op, arg = ins.op, ins.arg
    if op in WITH_OPERAND: return f'{op.lower()} {arg}'
    if op == 'LABEL':      return f'{arg}:'
    if op == 'CALL':       return arg
    return op.lower()


def disassemble(program: Program) -> str:
    lines = []
    for i, ins in enumerate(program.code):
        text = format_instr(ins)
        if   ins.op == 'IF':   text += f'  ( →{ins.arg[0] + 1}, then={ins.arg[1]} )'
        elif ins.op == 'ELSE': text += f'  ( →{ins.arg + 1} )'
        elif ins.op == 'CALL': text += f'  ( →{program.labels[ins.arg]} )'
        lines.append(f'{i:4}  line {ins.line:<5}{text}')
    return '\n'.join(lines)


# ── Tests ─────────────────────────────────────────────────────────────────────

MULTIPLY = '''\
push 3
push 4
multiply
halt

multiply:       # ( a b -- a*b ), by repeated addition
  if
    push 1
    sub
    swap
    dup
    rotate
    multiply
    add
  else
    swap
    pop
  then
  return
'''


def run_tests():
    cases = [
        # Arithmetic wraps mod 256
        ('push 255\npush 1\nadd',                  '', [0]),
        ('push 1\npush 3\nsub',                    '', [254]),
        ('push 200\npush 55\nadd\npush 55\nsub',   '', [200]),

        # Stack ops
        ('push 7\ndup',                            '', [7, 7]),
        ('push 1\npush 2\nswap',                   '', [2, 1]),
        ('push 1\npush 2\npush 3\nrotate',         '', [2, 3, 1]),
        ('push 1\npush 2\nover',                   '', [1, 2, 1]),
        ('push 1\npush 2\npush 3\npick 3',         '', [1, 2, 3, 1]),
        ('push 9\npop',                            '', []),

        # Output
        ('push 72\nprint_char\nhalt',              'H', []),
        ('push 42\nprint_byte',                    '42', []),

        # IF/ELSE/THEN
        ('push 5\nif\npush 1\nelse\npush 2\nthen', '', [5, 1]),
        ('push 0\nif\npush 1\nelse\npush 2\nthen', '', [0, 2]),
        ('push 0\nif\npush 1\nthen\npush 3',       '', [0, 3]),

        # Subroutines
        (MULTIPLY,                                 '', [12]),
        ('push 1\nreturn\npush 2',                 '', [1]),
        ('push 65\ngreet\nhalt\ngreet:\nprint_char\nreturn', 'A', []),
    ]

    passed = 0
    failures = []

    for src, out, stack in cases:
        result = run_source(src)
        got = (result.output.decode('latin-1'), result.stack)
        if result.ok and got == (out, stack):
            passed += 1
        else:
            failures.append((src.replace('\n', '; ')[:60], repr((out, stack)),
                             repr(result.error or got)))

    print(f'Tests: {passed}/{len(cases)} passed')
    for src, exp, got in failures:
        print(f'  FAIL: {src}')
        print(f'    exp: {exp}')
        print(f'    got: {got}')
    return passed, len(cases)


# ── Command line ──────────────────────────────────────────────────────────────

def _write_stdout(data: bytes):
    buf = getattr(sys.stdout, 'buffer', None)
    if buf is None:
        sys.stdout.write(data.decode('latin-1'))
        sys.stdout.flush()
        return
    sys.stdout.flush()
    buf.write(data)
    buf.flush()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog='bytestack',
        description='Run a bytestack program.',
    )
    ap.add_argument('file', nargs='?', help='program source file')
    ap.add_argument('-v', '--verbose', action='store_true', help='print every step to stderr')
    ap.add_argument('-s', '--step', action='store_true', help='wait for Enter after every step')
    ap.add_argument('--stack-size', type=int, default=256, metavar='N',
                    help='value stack capacity (default: 256)')
    ap.add_argument('--max-depth', type=int, metavar='N', help='call stack limit')
    ap.add_argument('--max-steps', type=int, metavar='N', help='stop after N instructions')
    ap.add_argument('--dump', action='store_true', help='print the resolved program and exit')
    ap.add_argument('--test', action='store_true', help='run the built-in self-test')
    return ap


def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.test:
        p, t = run_tests()
        return 0 if p == t else 1
    if args.file is None:
        ap.error('no filename specified')
    if args.stack_size < 1:
        ap.error('--stack-size must be at least 1')

    try:
        with open(args.file, encoding='utf-8') as f:
            src = f.read()
    except (OSError, UnicodeDecodeError) as e:
        print(f"Error: could not read '{args.file}': {e}", file=sys.stderr)
        return 1

    try:
        program = load(src)
    except LoadError as e:
        print(f'Parse error at line {e.line}: {e.message}', file=sys.stderr)
        return 1

    if args.dump:
        print(disassemble(program))
        return 0

    tracing = args.verbose or args.step

    def trace(m):
        ins = m.code[m.ip]
        print(f'Stack: {m.ds}', file=sys.stderr)
        print(f'Line {ins.line}: {format_instr(ins)}', file=sys.stderr, flush=True)
        if args.step:
            sys.stdin.readline()

    options = Options(stack_size=args.stack_size, max_call_depth=args.max_depth,
                      max_steps=args.max_steps, trace=trace if tracing else None)
    m = Machine(program, options, sink=_write_stdout)
    try:
        m.run()
    except ExecutionError as e:
        print(f'Runtime error at line {e.line}: {KIND_TEXT[e.kind]}', file=sys.stderr)
        return 1

    if tracing:
        print('Program halted.', file=sys.stderr)
        print(f'Final stack: {m.ds}', file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(main())
