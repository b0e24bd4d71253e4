import unittest

from shipyard.ssh import cmd, join_remote, shell


class RemoteCommandTests(unittest.TestCase):
    def test_values_are_quoted(self) -> None:
        command = cmd("docker", "run", "--name", "shop; rm -rf /")
        self.assertEqual(command.render(), "docker run --name 'shop; rm -rf /'")
        self.assertEqual(command.program, "docker")

    def test_sudo_prefix_only_for_non_root(self) -> None:
        command = cmd("systemctl", "reload", "nginx", sudo=True)
        self.assertEqual(command.render(), "sudo -n systemctl reload nginx")
        self.assertEqual(command.render(as_root=True), "systemctl reload nginx")

    def test_environment_is_sorted(self) -> None:
        command = cmd("apt-get", "install", "-y", "nginx", sudo=True, env={"LC_ALL": "C", "DEBIAN_FRONTEND": "noninteractive"})
        self.assertEqual(
            command.render(),
            "sudo -n env DEBIAN_FRONTEND=noninteractive LC_ALL=C apt-get install -y nginx",
        )

    def test_shell_template_passes_arguments(self) -> None:
        command = shell('cat > "$1"', "/opt/app/it's.env")
        self.assertEqual(command.argv, ("sh", "-c", 'cat > "$1"', "sh", "/opt/app/it's.env"))
        self.assertEqual(command.render(), "sh -c 'cat > \"$1\"' sh '/opt/app/it'\"'\"'s.env'")

    def test_empty_command_rejected(self) -> None:
        with self.assertRaises(ValueError):
            cmd()

    def test_join_remote(self) -> None:
        self.assertEqual(join_remote("/opt/app/", "src"), "/opt/app/src")
        self.assertEqual(join_remote("/opt/app", "/.shipyard/", "snapshot.env"), "/opt/app/.shipyard/snapshot.env")
        self.assertEqual(join_remote("/"), "/")


if __name__ == "__main__":
    unittest.main()
