import abc
import logging
import os
import shlex
import shutil
import subprocess

logger = logging.getLogger(__name__)

# $1 is the title, $2 the body
POPUP_SCRIPT = 'printf "%s\\n\\n%s\\n\\n[enter to dismiss]" "$1" "$2"; read -r _'


class MultiplexerBridge(abc.ABC):
    """Shows a popup through the host terminal multiplexer.

    notify() is best effort: it never raises and never waits for the popup
    to be closed.
    """

    name = 'multiplexer'
    executable = None
    env_var = None

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ

    def available(self):
        """True when running inside this multiplexer and its CLI is on PATH."""
        return bool(self.environ.get(self.env_var)) and shutil.which(self.executable) is not None

    @abc.abstractmethod
    def command(self, title, body):
        """The argv that opens the popup."""

    def notify(self, title, body):
        if not self.available():
            logger.debug("%s not available, dropping popup %r", self.name, title)
            return False
        try:
            subprocess.Popen(
                self.command(title, body),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("Could not open %s popup: %s", self.name, e)
            return False
        return True


class ZellijBridge(MultiplexerBridge):
    """Opens the reminder in a floating Zellij pane."""

    name = 'zellij'
    executable = 'zellij'
    env_var = 'ZELLIJ'

    def command(self, title, body):
        return [
            'zellij', 'run', '--floating', '--close-on-exit', '--name', title,
            '--', 'sh', '-c', POPUP_SCRIPT, 'termcal', title, body,
        ]


class TmuxBridge(MultiplexerBridge):
    """Opens the reminder with tmux display-popup."""

    name = 'tmux'
    executable = 'tmux'
    env_var = 'TMUX'

    def command(self, title, body):
        script = ' '.join(['sh', '-c', shlex.quote(POPUP_SCRIPT), 'termcal',
                           shlex.quote(title), shlex.quote(body)])
        # '#' starts a tmux format in the title
        return ['tmux', 'display-popup', '-T', title.replace('#', '##'), '-w', '60', '-h', '8', '-E', script]


class NullBridge(MultiplexerBridge):
    """Used outside any multiplexer: reminders only reach the log."""

    name = 'none'

    def available(self):
        return True

    def command(self, title, body):
        return []

    def notify(self, title, body):
        logger.info("Reminder (no multiplexer): %s | %s", title, body.replace('\n', ' | '))
        return True


BRIDGES = {bridge.name: bridge for bridge in (ZellijBridge, TmuxBridge, NullBridge)}


def detect_bridge(name='auto', environ=None):
    """Pick a bridge by name, or from the environment when name is 'auto'."""
    environ = os.environ if environ is None else environ
    if name != 'auto':
        return BRIDGES[name](environ)
    if environ.get('ZELLIJ'):
        return ZellijBridge(environ)
    if environ.get('TMUX'):
        return TmuxBridge(environ)
    return NullBridge(environ)
