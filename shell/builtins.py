"""Builtin commands for the shell runtime. All of them work purely against the VFS."""

import re
import time
from typing import Dict, List, Optional, Set, Tuple

from shell.runtime import CommandContext, ShellCommand, ShellResult
from vfs import NotFoundError, display_path, join_path, parent_of, resolve_path


def _split_flags(args: List[str], allowed: str) -> Tuple[Set[str], List[str]]:
    """Split combined short flags (-rf) from operands. Unknown flags raise ValueError."""
    flags: Set[str] = set()
    operands: List[str] = []
    for arg in args:
        if arg.startswith("-") and len(arg) > 1 and not operands:
            for ch in arg[1:]:
                if ch not in allowed:
                    raise ValueError(f"invalid option -- '{ch}'")
                flags.add(ch)
        else:
            operands.append(arg)
    return flags, operands


def _line_count_arg(args: List[str], default: int = 10) -> Tuple[int, List[str]]:
    """Parse `-n N`, `-nN` and `-N` for head/tail."""
    count = default
    rest: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "-n" and i + 1 < len(args):
            count = int(args[i + 1])
            i += 2
            continue
        if arg.startswith("-n") and arg[2:].isdigit():
            count = int(arg[2:])
        elif arg.startswith("-") and arg[1:].isdigit():
            count = int(arg[1:])
        else:
            rest.append(arg)
        i += 1
    return count, rest


async def _read_inputs(name: str, files: List[str], ctx: CommandContext) -> Tuple[List[Tuple[str, str]], List[str]]:
    """Read operand files (or stdin when none). Returns ([(label, text)], errors)."""
    if not files:
        return [("-", ctx.stdin or "")], []
    out: List[Tuple[str, str]] = []
    errors: List[str] = []
    for f in files:
        try:
            out.append((f, await ctx.vfs.read_text(resolve_path(f, ctx.cwd))))
        except NotFoundError:
            errors.append(f"{name}: {f}: No such file or directory")
    return out, errors


class CatCommand(ShellCommand):
    name = "cat"
    description = "Concatenate files and print on the standard output"
    usage = "cat [file...]"

    async def execute(self, args, ctx):
        inputs, errors = await _read_inputs(self.name, args, ctx)
        return ShellResult(
            stdout="".join(text for _, text in inputs),
            stderr="\n".join(errors),
            exit_code=1 if errors else 0,
        )


class CdCommand(ShellCommand):
    name = "cd"
    description = "Change the working directory for the rest of the command line"
    usage = "cd [dir]"

    async def execute(self, args, ctx):
        target = resolve_path(args[0] if args else "/", ctx.cwd)
        if not await ctx.vfs.exists(target):
            return ShellResult(stderr=f"cd: {args[0]}: No such file or directory", exit_code=1)
        if not await ctx.vfs.is_dir(target):
            return ShellResult(stderr=f"cd: {args[0]}: Not a directory", exit_code=1)
        return ShellResult(new_cwd=target)


class CpCommand(ShellCommand):
    name = "cp"
    description = "Copy files and directories"
    usage = "cp [-r] source dest"

    async def execute(self, args, ctx):
        flags, ops = _split_flags(args, "rR")
        if len(ops) != 2:
            return ShellResult(stderr="cp: expected source and destination", exit_code=1)
        src, dst = resolve_path(ops[0], ctx.cwd), resolve_path(ops[1], ctx.cwd)
        src_stat = await ctx.vfs.stat(src)
        if await ctx.vfs.is_dir(dst):
            dst = join_path(dst, src.rsplit("/", 1)[-1])
        if not src_stat.is_directory:
            await ctx.vfs.write_file(dst, await ctx.vfs.read_file(src))
            return ShellResult()
        if not flags & {"r", "R"}:
            return ShellResult(stderr=f"cp: -r not specified; omitting directory '{ops[0]}'", exit_code=1)
        await ctx.vfs.mkdir(dst)
        for path in await ctx.vfs.walk(src):
            await ctx.vfs.write_file(join_path(dst, path[len(src):].lstrip("/")), await ctx.vfs.read_file(path))
        return ShellResult()


class EchoCommand(ShellCommand):
    name = "echo"
    description = "Display a line of text"
    usage = "echo [-n] [text...]"

    async def execute(self, args, ctx):
        newline = True
        if args and args[0] == "-n":
            newline, args = False, args[1:]
        return ShellResult(stdout=" ".join(args) + ("\n" if newline else ""))


class EnvCommand(ShellCommand):
    name = "env"
    description = "Print the environment"
    usage = "env"

    async def execute(self, args, ctx):
        return ShellResult(stdout="".join(f"{k}={v}\n" for k, v in sorted(ctx.env.items())))


class GrepCommand(ShellCommand):
    name = "grep"
    description = "Print lines matching a pattern"
    usage = "grep [-i] [-n] [-v] [-r] pattern [file...]"

    async def execute(self, args, ctx):
        flags, ops = _split_flags(args, "invrc")
        if not ops:
            return ShellResult(stderr="grep: no pattern given", exit_code=2)
        regex = re.compile(ops[0], re.IGNORECASE if "i" in flags else 0)
        files = ops[1:]
        if "r" in flags:
            expanded: List[str] = []
            for f in files or ["."]:
                path = resolve_path(f, ctx.cwd)
                if await ctx.vfs.is_dir(path):
                    expanded.extend(display_path(p) for p in await ctx.vfs.walk(path))
                else:
                    expanded.append(f)
            files = expanded
        inputs, errors = await _read_inputs(self.name, files, ctx)
        show_name = len(inputs) > 1
        lines: List[str] = []
        total = 0
        for label, text in inputs:
            count = 0
            for no, line in enumerate(text.splitlines(), 1):
                if bool(regex.search(line)) == ("v" in flags):
                    continue
                count += 1
                if "c" in flags:
                    continue
                prefix = f"{label}:" if show_name else ""
                if "n" in flags:
                    prefix += f"{no}:"
                lines.append(prefix + line)
            if "c" in flags:
                lines.append(f"{label}:{count}" if show_name else str(count))
            total += count
        exit_code = 2 if errors else (0 if total else 1)
        return ShellResult(
            stdout="".join(l + "\n" for l in lines), stderr="\n".join(errors), exit_code=exit_code,
        )


class HeadCommand(ShellCommand):
    name = "head"
    description = "Output the first part of files"
    usage = "head [-n N] [file]"

    async def execute(self, args, ctx):
        count, files = _line_count_arg(args)
        inputs, errors = await _read_inputs(self.name, files, ctx)
        out = "".join("".join(l + "\n" for l in text.splitlines()[:count]) for _, text in inputs)
        return ShellResult(stdout=out, stderr="\n".join(errors), exit_code=1 if errors else 0)


class TailCommand(ShellCommand):
    name = "tail"
    description = "Output the last part of files"
    usage = "tail [-n N] [file]"

    async def execute(self, args, ctx):
        count, files = _line_count_arg(args)
        inputs, errors = await _read_inputs(self.name, files, ctx)
        out = "".join(
            "".join(l + "\n" for l in (text.splitlines()[-count:] if count else [])) for _, text in inputs
        )
        return ShellResult(stdout=out, stderr="\n".join(errors), exit_code=1 if errors else 0)


class LsCommand(ShellCommand):
    name = "ls"
    description = "List directory contents"
    usage = "ls [-a] [-l] [path...]"

    async def execute(self, args, ctx):
        flags, ops = _split_flags(args, "al1")
        blocks: List[str] = []
        errors: List[str] = []
        targets = ops or ["."]
        for target in targets:
            path = resolve_path(target, ctx.cwd)
            try:
                st = await ctx.vfs.stat(path)
            except NotFoundError:
                errors.append(f"ls: cannot access '{target}': No such file or directory")
                continue
            names = await ctx.vfs.list_files(path) if st.is_directory else [target]
            if "a" not in flags:
                names = [n for n in names if not n.startswith(".")]
            if "l" in flags:
                rows = []
                for n in names:
                    child = await ctx.vfs.stat(join_path(path, n)) if st.is_directory else st
                    kind = "d" if child.is_directory else "-"
                    stamp = time.strftime("%b %d %H:%M", time.localtime(child.mtime))
                    rows.append(f"{kind} {child.size:>8} {stamp} {n}")
                listing = "\n".join(rows)
            else:
                listing = "\n".join(names)
            if len(targets) > 1 and st.is_directory:
                listing = f"{target}:\n{listing}"
            if listing:
                blocks.append(listing)
        return ShellResult(
            stdout="\n\n".join(blocks) + ("\n" if blocks else ""),
            stderr="\n".join(errors),
            exit_code=2 if errors else 0,
        )


class MkdirCommand(ShellCommand):
    name = "mkdir"
    description = "Make directories"
    usage = "mkdir [-p] dir..."

    async def execute(self, args, ctx):
        flags, ops = _split_flags(args, "p")
        if not ops:
            return ShellResult(stderr="mkdir: missing operand", exit_code=1)
        errors = []
        for d in ops:
            path = resolve_path(d, ctx.cwd)
            if "p" not in flags:
                if await ctx.vfs.exists(path):
                    errors.append(f"mkdir: cannot create directory '{d}': File exists")
                    continue
                if not await ctx.vfs.is_dir(parent_of(path)):
                    errors.append(f"mkdir: cannot create directory '{d}': No such file or directory")
                    continue
            await ctx.vfs.mkdir(path)
        return ShellResult(stderr="\n".join(errors), exit_code=1 if errors else 0)


class MvCommand(ShellCommand):
    name = "mv"
    description = "Move or rename files"
    usage = "mv source dest"

    async def execute(self, args, ctx):
        _, ops = _split_flags(args, "f")
        if len(ops) != 2:
            return ShellResult(stderr="mv: expected source and destination", exit_code=1)
        src, dst = resolve_path(ops[0], ctx.cwd), resolve_path(ops[1], ctx.cwd)
        if await ctx.vfs.is_dir(dst):
            dst = join_path(dst, src.rsplit("/", 1)[-1])
        await ctx.vfs.rename(src, dst)
        return ShellResult()


class PwdCommand(ShellCommand):
    name = "pwd"
    description = "Print the working directory"
    usage = "pwd"

    async def execute(self, args, ctx):
        return ShellResult(stdout=display_path(ctx.cwd) + "\n")


class RmCommand(ShellCommand):
    name = "rm"
    description = "Remove files or directories"
    usage = "rm [-r] [-f] path..."

    async def execute(self, args, ctx):
        flags, ops = _split_flags(args, "rRf")
        if not ops:
            return ShellResult(stderr="rm: missing operand", exit_code=1)
        errors = []
        for target in ops:
            path = resolve_path(target, ctx.cwd)
            if not await ctx.vfs.exists(path):
                if "f" not in flags:
                    errors.append(f"rm: cannot remove '{target}': No such file or directory")
                continue
            if await ctx.vfs.is_dir(path):
                if not flags & {"r", "R"}:
                    errors.append(f"rm: cannot remove '{target}': Is a directory")
                    continue
                await ctx.vfs.rmdir(path, recursive=True)
            else:
                await ctx.vfs.unlink(path)
        return ShellResult(stderr="\n".join(errors), exit_code=1 if errors else 0)


class TouchCommand(ShellCommand):
    name = "touch"
    description = "Create empty files or update timestamps"
    usage = "touch file..."

    async def execute(self, args, ctx):
        if not args:
            return ShellResult(stderr="touch: missing file operand", exit_code=1)
        for f in args:
            path = resolve_path(f, ctx.cwd)
            data = await ctx.vfs.read_file(path) if await ctx.vfs.exists(path) else b""
            await ctx.vfs.write_file(path, data)
        return ShellResult()


class WcCommand(ShellCommand):
    name = "wc"
    description = "Print line, word and byte counts"
    usage = "wc [-l] [-w] [-c] [file...]"

    async def execute(self, args, ctx):
        flags, files = _split_flags(args, "lwc")
        selected = [f for f in "lwc" if f in flags] or ["l", "w", "c"]
        inputs, errors = await _read_inputs(self.name, files, ctx)
        rows = []
        for label, text in inputs:
            counts = {"l": text.count("\n"), "w": len(text.split()), "c": len(text.encode("utf-8"))}
            cols = " ".join(f"{counts[f]:>7}" for f in selected)
            rows.append(f"{cols} {label}" if label != "-" else cols)
        return ShellResult(
            stdout="".join(r + "\n" for r in rows), stderr="\n".join(errors), exit_code=1 if errors else 0,
        )


class WhichCommand(ShellCommand):
    name = "which"
    description = "Locate a command"
    usage = "which command..."

    async def execute(self, args, ctx):
        found, missing = [], False
        for n in args:
            if n in ctx.registry:
                found.append(f"{n}: shell builtin")
            else:
                missing = True
        return ShellResult(stdout="".join(f + "\n" for f in found), exit_code=1 if missing else 0)


class WhoamiCommand(ShellCommand):
    name = "whoami"
    description = "Print the current user name"
    usage = "whoami"

    async def execute(self, args, ctx):
        return ShellResult(stdout=ctx.user + "\n")


class DateCommand(ShellCommand):
    name = "date"
    description = "Print the current date and time"
    usage = "date"

    async def execute(self, args, ctx):
        return ShellResult(stdout=time.strftime("%a %b %d %H:%M:%S %Z %Y") + "\n")


BUILTIN_COMMANDS = [
    CatCommand, CdCommand, CpCommand, DateCommand, EchoCommand, EnvCommand,
    GrepCommand, HeadCommand, LsCommand, MkdirCommand, MvCommand, PwdCommand,
    RmCommand, TailCommand, TouchCommand, WcCommand, WhichCommand, WhoamiCommand,
]


def default_registry(extra: Optional[List[ShellCommand]] = None) -> Dict[str, ShellCommand]:
    """Fresh name -> command registry with every builtin (plus any extras)."""
    commands: List[ShellCommand] = [cls() for cls in BUILTIN_COMMANDS] + list(extra or [])
    return {c.name: c for c in commands}
