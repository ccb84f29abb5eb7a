#!/usr/bin/env python3
"""plumbing shared by the debian build tree tools.

Both tools follow the same shape: parse the command line, start the run
(PID lock, signal traps), do their steps and finalise, exiting with a code
that sums up the warnings and errors seen along the way.
"""
import sys,os
from subprocess import Popen, PIPE, STDOUT, call
from collections import namedtuple
import argparse
import functools
import json
import re
import shlex
import shutil
import signal
import stat
import tempfile


default_conf_file = './debtree.json'


defaults = {
    'package': 'wireguard-kit',
    'debian_dir': 'debian',
    'source_dir': 'source',
    # Relative to the root of the git working tree.
    'output_dir': '..',
    'tmp_root': '/tmp',
    'pid_dir': '/tmp',
    'path': '/usr/sbin:/sbin:/usr/bin:/bin',
    'lang': 'C.UTF-8',
    'build_cmd': ['debuild'],
    'sign_cmd': ['debsign'],
    # dpkg cannot remove this shared directory when the package is removed.
    'strip_path': './usr/lib/systemd/system/',
    'artifact_suffixes': [
        '_all.deb',
        '_amd64.build',
        '_amd64.buildinfo',
        '_amd64.changes',
        '.debian.tar.xz',
        '.dsc',
    ],
    'executables': [
        '.git/hooks/post-checkout',
        '.git/hooks/post-merge',
        '.git/hooks/pre-commit',
        'debian/mk_htm_and_pdf_from_odts.sh',
        'debian/postinst',
        'debian/postrm',
        'debian/prerm',
        'debian/rules',
        'tools/git-store-meta/git-store-meta.pl',
        'tools/git-store-meta/hooks-for-wireguard-kit/post-checkout',
        'tools/git-store-meta/hooks-for-wireguard-kit/post-merge',
        'tools/git-store-meta/hooks-for-wireguard-kit/pre-commit',
    ],
}


msg_lf = '\n    '


#### errors


class Error(Exception):
    """A fatal condition. Reported once, by run_tool, which then finalises.
    """


class UsageError(Error):
    pass


class ConfigError(Error):
    pass


class PreconditionError(Error):
    pass


class LockError(Error):
    pass


class ProgrammingError(Error):
    """A malformed internal request, as opposed to a failed check.
    """
    def __init__(self, message):
        super().__init__(f'Programming error: {message}')


class CommandFailed(Error):
    """An external command exited non-zero or said something unexpected.
    """
    def __init__(self, cmd, returncode, output=None):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        message = f'\nCommand: {" ".join(cmd)}\nrc: {returncode}'
        if output is not None:
            message += f'\nOutput: {output}'
        super().__init__(message)


class Interrupted(Exception):
    """Raised by the signal handler; the exit code becomes 128 + signum.
    """
    def __init__(self, signum):
        super().__init__(signum)
        self.signum = signum


#### versions


package_version_re = re.compile(r'[0-9]+\.[0-9]+\.[0-9]+-[0-9]+')


class PackageVersion(namedtuple('PackageVersion', 'full software revision')):
    """A package version such as 3.2.2-1: software version 3.2.2, package revision 1.
    """
    __slots__ = ()

    @classmethod
    def parse(cls, text):
        if not package_version_re.fullmatch(text):
            raise UsageError(f'Invalid package version {text} (not n.n.n-n)')
        software, _, revision = text.rpartition('-')
        return cls(text, software, int(revision))

    def __str__(self):
        return self.full


#### file checks


kind_tests = {
    'b': (stat.S_ISBLK, "file '{}' is unreachable, does not exist or is not a block special file"),
    'f': (stat.S_ISREG, "file '{}' is unreachable, does not exist or is not an ordinary file"),
    'd': (stat.S_ISDIR, "directory '{}' is unreachable, does not exist or is not a directory"),
}

perm_tests = {
    'r': (os.R_OK, 'read'),
    'w': (os.W_OK, 'write'),
    'x': (os.X_OK, 'execute'),
}


def parse_requirement(path, requirement):
    """Split '<kind>:<perms>[:a]' into (kind, perms, absolute).
    """
    kind, _, rest = requirement.partition(':')
    perms, _, absolute = rest.partition(':')
    if absolute not in ('', 'a'):
        raise ProgrammingError(
            f"check_files: invalid absoluteness flag in '{requirement}' specified for file '{path}'")
    if kind not in kind_tests:
        raise ProgrammingError(
            f"check_files: invalid file type '{kind}' specified for file '{path}'")
    for perm in perms:
        if perm not in perm_tests:
            raise ProgrammingError(
                f"check_files: invalid permission '{perm}' requested for file '{path}'")
    return kind, perms, absolute == 'a'


def check_files(*pairs):
    """Check each (path, requirement) pair and return a list of problems.

    requirement is '<kind>:<perms>[:a]' where kind is b (block special),
    f (ordinary file) or d (directory), perms is none or more of r, w and x,
    and a requests that the path be absolute.  Example: ('/tmp', 'd:rwx:a').

    Every failing property of every path gets its own message, except that
    a path of the wrong kind is not examined further.  An empty list means
    all is well.  A malformed requirement raises ProgrammingError.
    """
    checks = [(os.fspath(path), parse_requirement(path, requirement))
              for path, requirement in pairs]
    problems = []
    for path, (kind, perms, absolute) in checks:
        is_kind, message = kind_tests[kind]
        try:
            mode = os.stat(path).st_mode
        except OSError:
            mode = None
        if mode is None or not is_kind(mode):
            problems.append(message.format(path))
            continue
        for perm in perms:
            access, name = perm_tests[perm]
            if not os.access(path, access):
                problems.append(f'{path}: no {name} permission')
        if absolute and not path.startswith('/'):
            problems.append(f'{path}: does not begin with /')
    return problems


def require_files(*pairs):
    """check_files, raising PreconditionError with every problem found.
    """
    problems = check_files(*pairs)
    if problems:
        raise PreconditionError('\n'.join(problems))


#### messages


class RunContext:
    """Run state threaded through every step: debugging, and whether any
    warning or error was reported.
    """
    def __init__(self, debugging=False):
        self.debugging = debugging
        self.warning_flag = False
        self.error_flag = False
        self.indent = ''

    def msg(self, cls, text):
        """Report `text` as class D(ebug), I(nfo), W(arning) or E(rror).
        Info goes to stdout, the rest to stderr.
        """
        if cls == 'D':
            if not self.debugging:
                return
            print(f'DEBUG: {text}', file=sys.stderr, flush=True)
        elif cls == 'I':
            print(text, flush=True)
        elif cls == 'W':
            self.warning_flag = True
            print(f'WARN: {text}', file=sys.stderr, flush=True)
        elif cls == 'E':
            self.error_flag = True
            print(f'ERROR: {text}', file=sys.stderr, flush=True)
        else:
            raise ProgrammingError(f"msg: invalid class '{cls}': '{text}'")

    def debug(self, text):
        self.msg('D', text)

    def info(self, text):
        self.msg('I', text)

    def warning(self, text):
        self.msg('W', text)

    def error(self, text):
        self.msg('E', text)

    def show(self, cmd, cwd=None):
        """Print command to be executed.
        """
        line = '$ ' + ' '.join(shlex.quote(str(arg)) for arg in cmd)
        if cwd:
            line = f'(cd {shlex.quote(str(cwd))}) {line}'
        self.debug(line)

    def trace(self, name, text):
        """Function call trace, indented by call depth.
        """
        if not self.debugging:
            return
        if text.startswith('started'):
            self.indent += '  '
            self.debug(f'{self.indent}{name}: {text}')
        elif text.startswith('returning'):
            self.debug(f'{self.indent}{name}: {text}')
            self.indent = self.indent[2:]
        else:
            self.debug(f'{self.indent}{name}: {text}')


def traced(method):
    """Trace entry to and return from a Tool method.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        self.ctx.trace(method.__name__, 'started')
        try:
            return method(self, *args, **kwargs)
        finally:
            self.ctx.trace(method.__name__, 'returning')
    return wrapper


#### lifecycle


# Not routed to finalise: the uncatchable ones, child status, the
# job-control or ignored-by-default ones, and the synchronous faults a
# Python-level handler cannot deal with.
untrapped_signals = frozenset(
    getattr(signal, name)
    for name in ('SIGKILL', 'SIGSTOP', 'SIGCHLD', 'SIGCONT', 'SIGTSTP',
                 'SIGTTIN', 'SIGTTOU', 'SIGURG', 'SIGWINCH',
                 'SIGSEGV', 'SIGBUS', 'SIGFPE', 'SIGILL')
    if hasattr(signal, name)
)

# The interpreter itself sets these to SIG_IGN at startup.
interpreter_ignored_signals = frozenset(
    getattr(signal, name)
    for name in ('SIGPIPE', 'SIGXFSZ')
    if hasattr(signal, name)
)


def signal_name(signum):
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f'signal {signum}'


def pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class Lifecycle:
    """Owns the PID lock, the signal traps and the temporary directory, and
    tears them down exactly once in finalise.
    """
    INITIALISING = 'initialising'
    RUNNING = 'running'
    FINALISING = 'finalising'
    TERMINATED = 'terminated'

    def __init__(self, ctx, name):
        self.ctx = ctx
        self.name = name
        self.state = self.INITIALISING
        self.pid_file = None
        self.pid_file_locked = False
        self.tmp_dir = None
        self.tmp_dir_regex = None
        self.saved_handlers = {}
        self.saved_umask = None
        self.interrupted = None
        self.exit_code = None

    def start(self, pid_dir):
        """Take the PID lock and trap signals.
        """
        self.ctx.trace('start', 'started')
        self.saved_umask = os.umask(0o022)
        try:
            os.makedirs(pid_dir, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f'Unable to create PID directory {pid_dir}: {e.strerror}') from e
        require_files((pid_dir, 'd:rwx'))
        self.install_signal_handlers()
        self.lock(os.path.join(pid_dir, f'{self.name}.pid'))
        self.state = self.RUNNING
        self.ctx.trace('start', 'returning')

    def lock(self, pid_file):
        """Create the PID file atomically, failing fast when a live process holds it.
        A PID file left behind by a dead process is replaced.
        """
        self.pid_file = pid_file
        for _ in range(2):
            try:
                fd = os.open(pid_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                holder = self.read_pid()
                if holder is not None and pid_alive(holder):
                    raise LockError(
                        f'{self.name} is already running as PID {holder} (PID file {pid_file})')
                self.ctx.warning(f'Removing stale PID file {pid_file}')
                if os.path.exists(pid_file):
                    os.remove(pid_file)
                continue
            with os.fdopen(fd, 'w') as f:
                f.write(f'{os.getpid()}\n')
            self.pid_file_locked = True
            return
        raise LockError(f'Unable to lock PID file {pid_file}')

    def read_pid(self):
        try:
            with open(self.pid_file) as f:
                return int(f.readline().strip())
        except (OSError, ValueError):
            return None

    def unlock(self):
        if not self.pid_file_locked:
            return
        try:
            os.remove(self.pid_file)
        except FileNotFoundError:
            self.ctx.warning(f'PID file {self.pid_file} had already gone')
        self.pid_file_locked = False

    def install_signal_handlers(self):
        """Route every terminating signal to on_signal.
        Signals already ignored when we start stay ignored, except those the
        interpreter ignores on its own account, and handlers installed
        outside Python (getsignal() is None) are left alone.
        """
        for signum in sorted(signal.valid_signals()):
            if signum in untrapped_signals:
                continue
            try:
                current = signal.getsignal(signum)
                if current is None:
                    continue
                if current == signal.SIG_IGN and signum not in interpreter_ignored_signals:
                    continue
                self.saved_handlers[signum] = signal.signal(signum, self.on_signal)
            except (OSError, ValueError):
                # reserved by the C library
                self.ctx.debug(f'Cannot trap {signal_name(signum)}')

    def restore_signal_handlers(self):
        for signum, handler in self.saved_handlers.items():
            signal.signal(signum, handler)
        self.saved_handlers = {}

    def on_signal(self, signum, frame):
        if self.interrupted is not None or self.state in (self.FINALISING, self.TERMINATED):
            return
        self.interrupted = signum
        raise Interrupted(signum)

    def make_tmp_dir(self, tmp_root):
        """Create the run's temporary directory, <tmp_root>/<name>.XXXXXXXX, mode 700.
        """
        if self.tmp_dir is not None:
            raise ProgrammingError(f'make_tmp_dir: {self.tmp_dir} already created')
        tmp_root = os.path.abspath(tmp_root)
        # finalise only removes paths matching this
        self.tmp_dir_regex = re.compile(
            '^' + re.escape(os.path.join(tmp_root, self.name + '.')) + '[^/]+$')
        try:
            self.tmp_dir = tempfile.mkdtemp(prefix=f'{self.name}.', dir=tmp_root)
        except OSError as e:
            raise PreconditionError(f'Unable to create temporary directory: {e}') from e
        return self.tmp_dir

    def remove_tmp_dir(self):
        if self.tmp_dir is None:
            return
        if self.ctx.debugging or not self.tmp_dir_regex.match(self.tmp_dir):
            self.ctx.info(f'Temporary directory {self.tmp_dir} is kept for inspection')
            return
        self.ctx.info(f'Removing temporary directory {self.tmp_dir} (use option -d to keep it)')
        try:
            shutil.rmtree(self.tmp_dir)
        except OSError as e:
            self.ctx.warning(f'Unable to remove temporary directory {self.tmp_dir}: {e}')

    def finalise(self, code=0):
        """Clean up and return the exit code.  Only the first call does any work.

        When code is 128 + a signal number the run was interrupted and the
        code is returned as is.  Otherwise the exit code is the sum of
           1 when there were any warnings
           2 when there were any errors
        and 2 when a non-zero code was asked for but neither happened.
        """
        if self.state in (self.FINALISING, self.TERMINATED):
            return self.exit_code
        self.ctx.trace('finalise', f'started with code {code}')
        self.state = self.FINALISING

        interrupt = None
        if code > 128:
            max_code = 128 + signal.NSIG - 1
            if code <= max_code:
                interrupt = signal_name(code - 128)
                self.ctx.info(f'Finalising on {interrupt}')
            else:
                self.ctx.error(
                    f'finalise called with invalid exit value {code} (> max valid interrupt code {max_code})')

        self.remove_tmp_dir()
        self.unlock()
        self.restore_signal_handlers()
        if self.saved_umask is not None:
            os.umask(self.saved_umask)

        if interrupt is not None:
            self.ctx.info(f'There was a {interrupt} interrupt')
            exit_code = code
        else:
            exit_code = 0
            if self.ctx.warning_flag:
                self.ctx.info('There was at least one WARNING')
                exit_code += 1
            if self.ctx.error_flag:
                self.ctx.info('There was at least one ERROR')
                exit_code += 2
            if exit_code == 0 and code != 0:
                exit_code = 2

        self.ctx.trace('finalise', 'returning')
        self.exit_code = exit_code
        self.state = self.TERMINATED
        return exit_code


#### command line


Options = namedtuple('Options', 'version debugging help conf_file')


missing = object()


class OptionParser(argparse.ArgumentParser):
    """argparse raising UsageError instead of exiting.
    """
    def error(self, message):
        raise UsageError(message)


def option_parser(prog):
    parser = OptionParser(prog=prog, add_help=False, allow_abbrev=False)
    parser.add_argument('-d', '--debug', dest='debugging', action='store_true')
    parser.add_argument('-h', '--help', action='store_true')
    # nargs='?' so that a missing argument is reported along with the rest
    parser.add_argument('-c', '--config', dest='conf_file', nargs='?', const=missing)
    parser.add_argument('-v', '--package-version', dest='version', nargs='?', const=missing)
    return parser


def usage(prog, verbose=False):
    """Print usage message.
    """
    print(f'usage: {prog} [-d] [-h] [-c <config file>] -v <package version>', file=sys.stderr)
    if not verbose:
        print('(use -h for help)', file=sys.stderr)
        return
    print('  where:'
          '\n    -c configuration file (default: ./debtree.json, if present)'
          '\n    -d debugging on'
          '\n    -h prints this help and exits'
          '\n    -v the package version to set up for.  Example 3.2.2-1',
          file=sys.stderr)


def command_line_error(errors):
    return UsageError('Command line error(s)' + ''.join(msg_lf + e for e in errors) + msg_lf + '(-h for help)')


def parse_options(argv, prog):
    """Parse the command line into Options.
    Every problem found is reported together, in one UsageError.
    """
    try:
        ns, extras = option_parser(prog).parse_known_args(argv)
    except UsageError as e:
        raise command_line_error([str(e)]) from e
    if ns.help:
        return Options(None, False, True, None)

    errors = []
    if ns.conf_file is missing:
        errors.append('Option -c must have an argument')
    version = None
    if ns.version is missing:
        errors.append('Option -v must have an argument')
    elif ns.version is None:
        errors.append('Option -v is required')
    else:
        try:
            version = PackageVersion.parse(ns.version)
        except UsageError as e:
            errors.append(str(e))

    arguments = []
    for arg in extras:
        if arg.startswith('-') and arg != '-' and not arguments:
            errors.append(f"Invalid option '{arg.split('=')[0]}'")
        else:
            arguments.append(arg)
    if arguments:
        errors.append(f"Invalid extra argument(s) '{' '.join(arguments)}'")

    if errors:
        raise command_line_error(errors)
    conf_file = None if ns.conf_file is missing else ns.conf_file
    return Options(version, ns.debugging, False, conf_file)


#### config


def config(conf_file=None, **override):
    """load config file if any.
    The default config file is optional; one named explicitly must exist.
    """
    explicit = conf_file is not None
    if not explicit:
        conf_file = default_conf_file
    config = defaults.copy()
    if explicit or os.path.exists(conf_file):
        try:
            with open(conf_file, 'r') as config_json:
                loaded = json.load(config_json)
        except (OSError, ValueError) as e:
            raise ConfigError(f'Unable to read configuration file {conf_file}: {e}') from e
        if not isinstance(loaded, dict):
            raise ConfigError(f'{conf_file}: expected a JSON object')
        unknown = sorted(set(loaded) - set(defaults))
        if unknown:
            raise ConfigError(f'{conf_file}: unknown configuration key(s) {", ".join(unknown)}')
        config.update(loaded)
    config.update(override)
    return config


#### tools


def command_env(path, lang):
    """Environment for external commands: fixed PATH and locale, no LC_* overrides.
    """
    env = {k: v for k, v in os.environ.items() if not k.startswith('LC_')}
    env.update(PATH=path, LANG=lang, LANGUAGE=lang)
    return env


class Tool:
    """Base for the tools: configuration plus running external commands.
    Subclasses name themselves and implement process().
    """
    name = None

    def __init__(
            self,
            ctx,
            lifecycle,
            version,
            package,
            debian_dir,
            source_dir,
            output_dir,
            tmp_root,
            pid_dir,
            path,
            lang,
            build_cmd,
            sign_cmd,
            strip_path,
            artifact_suffixes,
            executables,
    ):
        self.ctx = ctx
        self.lifecycle = lifecycle
        self.version = version
        self.package = package
        self.debian_dir = debian_dir
        self.source_dir = source_dir
        self.output_dir = output_dir
        self.tmp_root = tmp_root
        self.pid_dir = pid_dir
        self.build_cmd = list(build_cmd)
        self.sign_cmd = list(sign_cmd)
        self.strip_path = strip_path
        self.artifact_suffixes = list(artifact_suffixes)
        self.executables = list(executables)
        self.env = command_env(path, lang)
        self.changelog = os.path.join(debian_dir, 'changelog')
        self.copyright = os.path.join(debian_dir, 'copyright')
        self.tarball_name = f'{package}_{version.software}.orig.tar.gz'
        self.source_tarball = os.path.join(source_dir, self.tarball_name)

    def process(self):
        raise NotImplementedError

    def ensure_git_root(self):
        if not os.path.isdir('.git'):
            raise PreconditionError(f'{self.name} must be run in the root of the git working tree')

    def capture(self, cmd, cwd=None):
        """Run the command and return (returncode, output), stderr merged into output.
        """
        self.ctx.show(cmd, cwd)
        try:
            with Popen(cmd, cwd=cwd, env=self.env, stdout=PIPE, stderr=STDOUT) as p:
                try:
                    out, _ = p.communicate()
                except BaseException:
                    p.kill()
                    raise
        except OSError as e:
            raise CommandFailed(cmd, 127, e.strerror) from e
        return p.returncode, out.decode('utf8', 'replace').rstrip('\n')

    def capture_checked(self, cmd, cwd=None, quiet=False):
        """capture, raising CommandFailed on a non-zero exit, or on any output when quiet.
        """
        rc, out = self.capture(cmd, cwd=cwd)
        if rc != 0 or (quiet and out):
            raise CommandFailed(cmd, rc, out)
        return out

    def call_checked(self, cmd, cwd=None):
        """Run the command with its output going straight to the terminal.
        """
        self.ctx.show(cmd, cwd)
        try:
            rc = call(cmd, cwd=cwd, env=self.env)
        except OSError as e:
            raise CommandFailed(cmd, 127, e.strerror) from e
        if rc != 0:
            raise CommandFailed(cmd, rc)


def run_tool(tool_class, argv=None):
    """Run a tool from command line to finalise, returning the exit code.
    This is the one place fatal conditions are reported.
    """
    prog = tool_class.name
    ctx = RunContext()
    lifecycle = Lifecycle(ctx, prog)
    try:
        try:
            options = parse_options(sys.argv[1:] if argv is None else argv, prog)
            if options.help:
                usage(prog, verbose=True)
                return 0
            ctx.debugging = options.debugging
            conf = config(options.conf_file)
            lifecycle.start(conf['pid_dir'])
            tool = tool_class(ctx, lifecycle, options.version, **conf)
            tool.process()
            code = 0
        except Interrupted:
            raise
        except (Error, OSError) as e:
            ctx.error(str(e))
            code = 1
        except Exception as e:
            ctx.error(f'Unexpected error: {e!r}')
            code = 1
    # also covers a signal arriving while an error is being reported
    except Interrupted as e:
        code = 128 + e.signum
    return lifecycle.finalise(code)
