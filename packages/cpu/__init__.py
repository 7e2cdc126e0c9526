"""cpu client.

Runs a command on a remote host over SSH while exporting part of the local
file namespace back to it through a reverse tunnel that only the launched
command can use.
"""

__version__ = "0.1.0"
