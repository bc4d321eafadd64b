import unittest

import completion
import driverkit


class DescribeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.spec = completion.describe(driverkit.build_parser(), "driverkit")

    def test_commands_and_aliases(self) -> None:
        for name in ("docker", "kubernetes", "k8s", "kubernetes-in-cluster", "k8s-ic", "local", "images", "completion"):
            self.assertIn(name, self.spec.subcommands)
        self.assertEqual(self.spec.subcommands["kubernetes"].help, self.spec.subcommands["k8s"].help)
        self.assertEqual("Build using a Kubernetes cluster", self.spec.subcommands["k8s"].help)

    def test_options_and_choices(self) -> None:
        self.assertIn("--output-module", self.spec.options)
        self.assertEqual(["amd64", "arm64"], self.spec.choices["--architecture"])
        self.assertIn("--namespace", self.spec.subcommands["k8s"].options)
        self.assertNotIn("--namespace", self.spec.subcommands["docker"].options)
        self.assertEqual(["bash", "zsh", "fish"], self.spec.subcommands["completion"].arguments)


class ScriptTests(unittest.TestCase):
    def test_bash(self) -> None:
        script = completion.completion_script(driverkit.build_parser(), "bash")
        self.assertIn("_driverkit_completion() {", script)
        self.assertIn('--loglevel) COMPREPLY=($(compgen -W "debug error info warn warning" -- "$cur")); return 0 ;;', script)
        self.assertIn("    local) opts=", script)
        self.assertTrue(script.endswith("complete -F _driverkit_completion driverkit\n"))

    def test_zsh_wraps_bash(self) -> None:
        script = completion.completion_script(driverkit.build_parser(), "zsh")
        self.assertTrue(script.startswith("#compdef driverkit\n"))
        self.assertIn("bashcompinit", script)
        self.assertIn("complete -F _driverkit_completion driverkit", script)

    def test_fish(self) -> None:
        script = completion.completion_script(driverkit.build_parser(), "fish")
        self.assertIn("complete -c driverkit -n '__fish_use_subcommand' -a docker -d 'Build using the docker daemon'", script)
        self.assertIn("complete -c driverkit -n '__fish_seen_subcommand_from local' -l dkms", script)
        self.assertIn("complete -c driverkit -n '__fish_seen_subcommand_from completion' -a fish", script)

    def test_unknown_shell(self) -> None:
        with self.assertRaisesRegex(ValueError, "unsupported shell: powershell"):
            completion.completion_script(driverkit.build_parser(), "powershell")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
