"""Shell completion scripts generated from the argparse command tree."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from textwrap import dedent

SHELLS = ("bash", "zsh", "fish")


@dataclass
class CommandSpec:
    """Options and sub-commands of one (sub)parser, as seen by the completion."""

    name: str
    help: str = ""
    options: dict[str, str] = field(default_factory=dict)
    choices: dict[str, list[str]] = field(default_factory=dict)
    arguments: list[str] = field(default_factory=list)
    subcommands: dict[str, "CommandSpec"] = field(default_factory=dict)


def describe(parser: argparse.ArgumentParser, name: str = "", help_text: str = "") -> CommandSpec:
    """Return the :class:`CommandSpec` tree of *parser*."""

    spec = CommandSpec(name=name or parser.prog, help=help_text)
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            helps = {choice.dest: choice.help or "" for choice in action._choices_actions}
            seen: dict[int, str] = {}
            for sub_name, sub_parser in action.choices.items():
                # Aliases share the parser object of their command.
                primary = seen.setdefault(id(sub_parser), sub_name)
                spec.subcommands[sub_name] = describe(sub_parser, sub_name, helps.get(primary, ""))
            continue
        if not action.option_strings and action.choices:
            spec.arguments.extend(str(choice) for choice in action.choices)
        for option in action.option_strings:
            if action.help == argparse.SUPPRESS:
                continue
            spec.options[option] = action.help or ""
            if action.choices:
                spec.choices[option] = [str(choice) for choice in action.choices]
    return spec


def _words(values) -> str:
    return " ".join(sorted(values))


def bash_script(spec: CommandSpec, program: str = "driverkit") -> str:
    function = f"_{program.replace('-', '_')}_completion"
    command_cases = []
    for name, sub in sorted(spec.subcommands.items()):
        words = _words([*sub.options, *sub.subcommands, *sub.arguments, *spec.options])
        command_cases.append(f'    {name}) opts="{words}" ;;')
    choice_cases = []
    choices = dict(spec.choices)
    for sub in spec.subcommands.values():
        choices.update(sub.choices)
    for option, values in sorted(choices.items()):
        choice_cases.append(f'    {option}) COMPREPLY=($(compgen -W "{_words(values)}" -- "$cur")); return 0 ;;')
    root_words = _words([*spec.subcommands, *spec.options])
    return dedent(
        """\
        # bash completion for {program}
        {function}() {{
          local cur prev opts subcommand word
          cur="${{COMP_WORDS[COMP_CWORD]}}"
          prev="${{COMP_WORDS[COMP_CWORD-1]}}"
          case "$prev" in
        {choice_cases}
          esac
          subcommand=""
          for word in "${{COMP_WORDS[@]:1:COMP_CWORD-1}}"; do
            case " {commands} " in
              *" $word "*) subcommand="$word"; break ;;
            esac
          done
          case "$subcommand" in
        {command_cases}
            *) opts="{root_words}" ;;
          esac
          COMPREPLY=($(compgen -W "$opts" -- "$cur"))
        }}
        complete -F {function} {program}
        """
    ).format(
        program=program,
        function=function,
        choice_cases="\n".join(choice_cases),
        commands=_words(spec.subcommands),
        command_cases="\n".join(command_cases),
        root_words=root_words,
    )


def zsh_script(spec: CommandSpec, program: str = "driverkit") -> str:
    """Return a zsh completion reusing the bash one through ``bashcompinit``."""

    return f"#compdef {program}\nautoload -U +X bashcompinit && bashcompinit\n" + bash_script(spec, program)


def _fish_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("'", "\\'")


def _fish_option(program: str, condition: str, option: str, help_text: str, choices: list[str] | None) -> str:
    if option.startswith("--"):
        flag = f"-l {option[2:]}"
    else:
        flag = f"-s {option[1:]}"
    line = f"complete -c {program} -n '{condition}' {flag}"
    if choices:
        line += f" -x -a '{' '.join(choices)}'"
    if help_text:
        line += f" -d '{_fish_escape(help_text)}'"
    return line


def fish_script(spec: CommandSpec, program: str = "driverkit") -> str:
    lines = [f"# fish completion for {program}", f"complete -c {program} -f"]
    for name, sub in sorted(spec.subcommands.items()):
        lines.append(
            f"complete -c {program} -n '__fish_use_subcommand' -a {name} -d '{_fish_escape(sub.help)}'"
        )
    for option, help_text in sorted(spec.options.items()):
        lines.append(_fish_option(program, "true", option, help_text, spec.choices.get(option)))
    for name, sub in sorted(spec.subcommands.items()):
        condition = f"__fish_seen_subcommand_from {name}"
        for child in sorted([*sub.subcommands, *sub.arguments]):
            lines.append(f"complete -c {program} -n '{condition}' -a {child}")
        for option, help_text in sorted(sub.options.items()):
            if option in spec.options:
                continue
            lines.append(_fish_option(program, condition, option, help_text, sub.choices.get(option)))
    return "\n".join(lines) + "\n"


GENERATORS = {
    "bash": bash_script,
    "zsh": zsh_script,
    "fish": fish_script,
}


def completion_script(parser: argparse.ArgumentParser, shell: str, program: str = "driverkit") -> str:
    """Return the completion script of *parser* for *shell*."""

    try:
        generate = GENERATORS[shell]
    except KeyError:
        raise ValueError(f"unsupported shell: {shell}") from None
    return generate(describe(parser, program), program)
