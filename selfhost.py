#!/usr/bin/env python3

"""selfhost: install and manage self-hosted web apps on a Debian host."""

import sys
import os
import re
import json
import shlex
import argparse
import shutil
import logging
import platform
import subprocess
import tarfile
import tempfile
import zipfile
import pwd
from time import sleep
from contextlib import contextmanager
from getpass import getpass
from subprocess import CalledProcessError, check_call, check_output
from random import SystemRandom
from string import ascii_letters, digits
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse, urldefrag
from urllib.request import urlopen

COMBINED = 'COMBINED'
SAME_ORIGIN_STATIC = 'SAME_ORIGIN_STATIC'
SEPARATE = 'SEPARATE'
MODES = (COMBINED, SAME_ORIGIN_STATIC, SEPARATE)

MODE_DESCRIPTIONS = {
    COMBINED: 'one process serves API and embedded frontend (one origin)',
    SAME_ORIGIN_STATIC: 'API serves the frontend from a directory (one origin)',
    SEPARATE: 'API and frontend on different origins (CORS)'
}

SOURCES = ('release', 'archive', 'git')

SOURCE_DESCRIPTIONS = {
    'release': 'release by version',
    'archive': 'archive URL or local path',
    'git': 'git checkout'
}

# Sentinel for fields that cannot be recovered from disk
UNKNOWN = 'unknown'

_WEBAPPS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'webapps')

_SYSTEMD_UNIT_TEMPLATE = """\
[Unit]
Description={name} ({mode})
After=network.target mariadb.service
Wants=mariadb.service

[Service]
User={user}
Group={group}
ExecStart={binary}
WorkingDirectory={home}
Environment=VIKUNJA_CONFIG={config}
Restart=on-failure
RestartSec=5s
LimitNOFILE=65536
NoNewPrivileges=true
PrivateTmp=true
ProtectSystem=full
ProtectHome=true

[Install]
WantedBy=multi-user.target
"""

# TLS is terminated by the reverse proxy in front of the host
_NGINX_SITE_TEMPLATE = """\
server {{
    listen 80;
    server_name {host};

    root {root};
    index index.html;

    location /api/ {{
        proxy_pass http://127.0.0.1:{port}/api/;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}

    location / {{
        try_files $uri $uri/ /index.html;
    }}

    location ~* \\.(?:js|css|woff2?|ttf|png|jpg|svg)$ {{
        expires 30d;
        access_log off;
        try_files $uri /index.html;
    }}
}}
"""

_APACHE_SITE_TEMPLATE = """\
<VirtualHost *:80>
    ServerName {host}
    DocumentRoot {public}

    <Directory {public}>
        Options FollowSymLinks
        AllowOverride All
        Require all granted
        DirectoryIndex index.php index.html
    </Directory>

    Header always set X-Content-Type-Options "nosniff"
    Header always set X-Frame-Options "SAMEORIGIN"
    Header always set Referrer-Policy "strict-origin-when-cross-origin"

    ErrorLog ${{APACHE_LOG_DIR}}/{id}_error.log
    CustomLog ${{APACHE_LOG_DIR}}/{id}_access.log combined
</VirtualHost>
"""

_PHP_INI_TEMPLATE = """\
; {name} tuning
memory_limit = 512M
post_max_size = 64M
upload_max_filesize = 64M
max_execution_time = 120
; OPcache
opcache.enable=1
opcache.enable_cli=1
opcache.validate_timestamps=0
opcache.max_accelerated_files=20000
opcache.memory_consumption=192
opcache.interned_strings_buffer=16
"""

import yaml
from mysql import connector

class Error(Exception):
    """Base of all errors that abort a selfhost run."""

class ConfigurationError(Error):
    """Missing or invalid operator input or configuration."""

class ProvisionError(Error):
    """A package, account or database step failed."""

class DeployError(Error):
    """Installing an artifact or its configuration failed."""

class FetchError(DeployError):
    """An artifact could not be fetched or does not have the expected layout."""

class StateError(Error):
    """The persisted state is corrupt or the operation does not fit the current state."""

class CommandError(Error):
    """An external command failed.

    .. attribute:: cmd

    .. attribute:: status

       Exit status of the command.
    """

    def __init__(self, cmd, status):
        super().__init__('{} exited with status {}'.format(' '.join(cmd), status))
        self.cmd = cmd
        self.status = status

@contextmanager
def step(description, error):
    """Run a step, logging it before and after.

    :exc:`CommandError` and :exc:`OSError` are raised as *error*, other errors pass unchanged.
    """
    logger = logging.getLogger('selfhost')
    logger.info('%s...', description)
    try:
        yield
    except (CommandError, OSError) as e:
        logger.error('%s: failed', description)
        raise error('{}: {}'.format(description, e)) from e
    except Error:
        logger.error('%s: failed', description)
        raise
    logger.info('%s: ok', description)

class InstallState:
    """Persisted record describing one managed deployment.

    Attributes:

    * `mode`: One of :data:`MODES`.
    * `app_version`
    * `frontend_version`: Only for modes with a separately deployed frontend.
    * `public_url`
    * `frontend_url`: Equals `public_url` unless `mode` is ``SEPARATE``.
    * `db_name`
    * `db_user`
    * `db_secret`: Never shown after it was generated.
    * `server_name`: Server name of the web server site.
    * `source`: One of :data:`SOURCES`, where the web payload comes from.
    * `source_ref`: Git URL and ref (``url#ref``) or archive URL, depending on `source`.

    Fields that could not be recovered hold :data:`UNKNOWN`.
    """

    FIELDS = [
        ('mode', 'MODE'),
        ('app_version', 'APP_VERSION'),
        ('frontend_version', 'FRONTEND_VERSION'),
        ('public_url', 'PUBLIC_URL'),
        ('frontend_url', 'FRONTEND_URL'),
        ('db_name', 'DB_NAME'),
        ('db_user', 'DB_USER'),
        ('db_secret', 'DB_PASS'),
        ('server_name', 'SERVER_NAME'),
        ('source', 'SOURCE'),
        ('source_ref', 'SOURCE_REF')
    ]

    def __init__(self, mode=COMBINED, app_version=None, frontend_version=None, public_url=None,
                 frontend_url=None, db_name=None, db_user=None, db_secret=None,
                 server_name=None, source='release', source_ref=None):
        self.mode = mode
        self.app_version = app_version
        self.frontend_version = frontend_version
        self.public_url = public_url
        self.frontend_url = frontend_url
        self.db_name = db_name
        self.db_user = db_user
        self.db_secret = db_secret
        self.server_name = server_name
        self.source = source
        self.source_ref = source_ref

    @property
    def database(self):
        return Database(self.db_name, self.db_user, self.db_secret)

    def copy(self, **changes):
        attrs = self.json()
        attrs.update(changes)
        return InstallState(**attrs)

    def json(self):
        return {a: getattr(self, a) for a, _ in self.FIELDS}

    def dumps(self):
        """Serialize into shell assignments, one ``KEY='value'`` per line."""
        lines = []
        for attr, key in self.FIELDS:
            value = getattr(self, attr)
            if value is not None:
                lines.append('{}={}'.format(key, shell_quote(str(value))))
        return '\n'.join(lines) + '\n'

    @classmethod
    def loads(cls, text):
        """Parse a state written by :meth:`dumps`.

        Unknown keys are ignored, missing optional keys are ``None``. A :exc:`StateError` is raised
        for anything that is not an assignment or for a missing or invalid mode.
        """
        values = {}
        for n, line in enumerate(text.splitlines(), 1):
            try:
                tokens = shlex.split(line, comments=True)
            except ValueError as e:
                raise StateError('state line {}: {}'.format(n, e))
            if not tokens:
                continue
            if len(tokens) != 1 or '=' not in tokens[0]:
                raise StateError('state line {}: not an assignment'.format(n))
            key, value = tokens[0].split('=', 1)
            values[key] = value

        attrs = {a: values.get(k) or None for a, k in cls.FIELDS}
        if attrs['mode'] not in MODES:
            raise StateError('state mode {!r} invalid'.format(attrs['mode']))
        if attrs['source'] is None:
            attrs['source'] = 'release'
        return cls(**attrs)

    def __eq__(self, other):
        return isinstance(other, InstallState) and self.json() == other.json()

    def __repr__(self):
        attrs = self.json()
        if attrs['db_secret'] not in (None, UNKNOWN):
            attrs['db_secret'] = '***'
        return 'InstallState({})'.format(attrs)

class Database:
    def __init__(self, name, user, secret):
        self.name = name
        self.user = user
        self.secret = secret

    def json(self):
        return vars(self)

class Service:
    """Service unit belonging to a deployment.

    .. attribute:: owned

       If the unit belongs to the app only. Shared units (database and web servers) are left
       installed on uninstall.
    """

    def __init__(self, name, owned=False):
        self.name = name
        self.owned = owned

    def __repr__(self):
        return 'Service({!r}, owned={})'.format(self.name, self.owned)

class Host:
    """Debian host the apps are installed on.

    External commands go through :meth:`run`, :meth:`output` and :meth:`call`.

    .. attribute:: root

       Prefix for all host paths, ``/`` for the real host.
    """

    def __init__(self, root='/'):
        self.root = root
        self._logger = logging.getLogger('selfhost')

    def path(self, path):
        if self.root == '/':
            return path
        return os.path.join(self.root, path.lstrip('/'))

    def run(self, cmd, cwd=None, env=None):
        """Run *cmd*, raising a :exc:`CommandError` if it fails."""
        self._logger.debug('Running %s', ' '.join(cmd))
        envi = None
        if env:
            envi = dict(os.environ)
            envi.update(env)
        try:
            check_call(cmd, cwd=cwd, env=envi)
        except CalledProcessError as e:
            raise CommandError(cmd, e.returncode)
        except FileNotFoundError:
            raise CommandError(cmd, 127)

    def output(self, cmd, cwd=None):
        self._logger.debug('Running %s', ' '.join(cmd))
        try:
            return check_output(cmd, cwd=cwd, stderr=subprocess.DEVNULL).decode()
        except CalledProcessError as e:
            raise CommandError(cmd, e.returncode)
        except FileNotFoundError:
            raise CommandError(cmd, 127)

    def call(self, cmd, quiet=True):
        """Run *cmd* and return its exit status."""
        self._logger.debug('Running %s', ' '.join(cmd))
        out = subprocess.DEVNULL if quiet else None
        try:
            return subprocess.call(cmd, stdout=out, stderr=out)
        except FileNotFoundError:
            return 127

    def user_exists(self, user):
        try:
            pwd.getpwnam(user)
            return True
        except KeyError:
            return False

    def chown(self, path, user, group=None, recursive=False):
        cmd = ['chown']
        if recursive:
            cmd.append('-R')
        self.run(cmd + ['{}:{}'.format(user, group or user), path])

    def arch(self):
        return platform.machine()

    def which(self, name):
        # The search path only makes sense on the real root
        if self.root != '/':
            return None
        return shutil.which(name)

class Apt:
    """Debian package manager."""

    def __init__(self, host):
        self.host = host

    def is_installed(self, package):
        try:
            status = self.host.output(['dpkg-query', '-W', '-f=${Status}', package])
        except CommandError:
            return False
        return status.strip() == 'install ok installed'

    def install(self, packages):
        """Install the *packages* that are not installed yet and return them."""
        missing = sorted(p for p in packages if not self.is_installed(p))
        if not missing:
            return missing
        env = {'DEBIAN_FRONTEND': 'noninteractive'}
        self.host.run(['apt-get', '-q', 'update'], env=env)
        self.host.run(['apt-get', '-qy', 'install'] + missing, env=env)
        return missing

class Systemd:
    """Service supervisor."""

    def __init__(self, host):
        self.host = host

    def daemon_reload(self):
        self.host.run(['systemctl', 'daemon-reload'])

    def enable(self, *services, now=False):
        self.host.run(['systemctl', 'enable'] + (['--now'] if now else []) + list(services))

    def disable(self, *services, now=False):
        self.host.run(['systemctl', 'disable'] + (['--now'] if now else []) + list(services))

    def start(self, *services):
        self.host.run(['systemctl', 'start'] + list(services))

    def stop(self, *services):
        self.host.run(['systemctl', 'stop'] + list(services))

    def restart(self, *services):
        self.host.run(['systemctl', 'restart'] + list(services))

    def reload(self, service):
        try:
            self.host.run(['systemctl', 'reload', service])
        except CommandError:
            # Not every unit supports reload
            self.host.run(['systemctl', 'restart', service])

    def is_active(self, service):
        return self.host.call(['systemctl', 'is-active', '--quiet', service]) == 0

    def status(self, *services):
        """Print the supervisor's status report for *services*."""
        return self.host.call(['systemctl', '--no-pager', 'status'] + list(services), quiet=False)

_IDENTIFIER = re.compile(r'^[A-Za-z0-9_]+$')

class MariaDB:
    """MariaDB server, administered as root.

    Root logs in through the unix socket, or with the credentials of *option_file* if it exists.
    """

    service = 'mariadb'

    def __init__(self, host, socket='/run/mysqld/mysqld.sock', option_file='/root/.my.cnf'):
        self.host = host
        self.socket = socket
        self.option_file = option_file

    def connect(self):
        if os.path.isfile(self.option_file):
            return connector.connect(option_files=self.option_file)
        return connector.connect(unix_socket=self.socket, user='root')

    def create(self, database):
        """Create *database* and its user unless they exist.

        The password of an existing user is never changed. If the secret of *database* is
        :data:`UNKNOWN`, the user must exist already.
        """
        check_identifier(database.name, 'database name')
        check_identifier(database.user, 'database user')
        statements = [
            ('CREATE DATABASE IF NOT EXISTS `{}` CHARACTER SET utf8mb4 '
             'COLLATE utf8mb4_unicode_ci'.format(database.name), ())
        ]
        if database.secret not in (None, UNKNOWN):
            statements.append(("CREATE USER IF NOT EXISTS %s@'localhost' IDENTIFIED BY %s",
                               (database.user, database.secret)))
        statements += [
            ("GRANT ALL PRIVILEGES ON `{}`.* TO %s@'localhost'".format(database.name),
             (database.user, )),
            ('FLUSH PRIVILEGES', ())
        ]
        self._execute(statements)

    def delete(self, database):
        check_identifier(database.name, 'database name')
        check_identifier(database.user, 'database user')
        self._execute([
            ('DROP DATABASE IF EXISTS `{}`'.format(database.name), ()),
            ("DROP USER IF EXISTS %s@'localhost'", (database.user, )),
            ('FLUSH PRIVILEGES', ())
        ])

    def _execute(self, statements):
        try:
            db = self.connect()
        except connector.Error as e:
            raise ProvisionError('mariadb: {}'.format(e))
        try:
            # DDL does not take part in transactions anyway
            db.autocommit = True
            c = db.cursor()
            for query, params in statements:
                c.execute(query, params)
        except connector.Error as e:
            raise ProvisionError('mariadb: {}'.format(e))
        finally:
            db.close()

class Nginx:
    """Nginx server."""

    service = 'nginx'

    def __init__(self, host, systemd):
        self.host = host
        self.systemd = systemd

    def configure(self, site_path, link_path, config):
        """Write the site at *site_path*, enable it via *link_path* and reload."""
        write_atomic(self.host.path(site_path), config)
        link = self.host.path(link_path)
        os.makedirs(os.path.dirname(link), exist_ok=True)
        if os.path.lexists(link):
            os.remove(link)
        os.symlink(site_path, link)
        self.host.run(['nginx', '-t'])
        self.systemd.enable(self.service, now=True)
        self.systemd.reload(self.service)

    def remove(self, site_path, link_path):
        for path in [link_path, site_path]:
            path = self.host.path(path)
            if os.path.lexists(path):
                os.remove(path)
        if self.systemd.is_active(self.service):
            self.systemd.reload(self.service)

class Apache:
    """Apache httpd."""

    service = 'apache2'

    def __init__(self, host, systemd):
        self.host = host
        self.systemd = systemd

    def enable_modules(self, modules):
        self.host.run(['a2enmod', '-q'] + list(modules))

    def configure(self, site_path, config):
        """Write the site at *site_path*, make it the only enabled site and reload."""
        write_atomic(self.host.path(site_path), config)
        name = os.path.basename(site_path)
        # The default site may already be gone
        self.host.call(['a2dissite', '-q', '000-default'])
        self.host.run(['a2ensite', '-q', name])
        self.systemd.enable(self.service, now=True)
        self.systemd.reload(self.service)

    def remove(self, site_path):
        name = os.path.basename(site_path)
        self.host.call(['a2dissite', '-q', name])
        path = self.host.path(site_path)
        if os.path.lexists(path):
            os.remove(path)
        self.host.call(['a2ensite', '-q', '000-default'])
        if self.systemd.is_active(self.service):
            self.systemd.reload(self.service)

class _NotFound(Exception):
    pass

class Fetcher:
    """Downloads artifacts.

    Transient network failures are retried *retries* times, *delay* seconds apart. A "not found"
    answer is never retried.
    """

    def __init__(self, host, retries=3, delay=2):
        self.host = host
        self.retries = retries
        self.delay = delay
        self._logger = logging.getLogger('selfhost')

    def candidates(self, patterns, version, architectures=None):
        """Return the URLs for *version*, one per naming pattern, in order of preference.

        Patterns may use ``{version}``, ``{bare}`` (the version without leading ``v``) and
        ``{arch}``. A :exc:`FetchError` is raised if the host architecture is needed but not in the
        *architectures* map.
        """
        if not patterns:
            raise FetchError('no artifact naming scheme configured')
        arch = None
        if any('{arch}' in p for p in patterns):
            machine = self.host.arch()
            arch = (architectures or {}).get(machine)
            if not arch:
                raise FetchError('unsupported architecture {}'.format(machine))
        bare = version[1:] if version.startswith('v') else version
        return [p.format(version=version, bare=bare, arch=arch) for p in patterns]

    def fetch(self, urls, directory):
        """Download the first available of *urls* into *directory* and return its path."""
        tried = []
        for url in urls:
            try:
                return self.download(url, directory)
            except _NotFound:
                tried.append(url)
                if len(tried) < len(urls):
                    self._logger.info('%s not found, trying next naming scheme', url)
        raise FetchError('no artifact found, tried {}'.format(', '.join(tried)))

    def download(self, url, directory):
        tokens = urlparse(url)
        dest = os.path.join(directory, os.path.basename(tokens.path) or 'download')

        if tokens.scheme in ('', 'file'):
            path = tokens.path if tokens.scheme else url
            if not os.path.isfile(path):
                raise _NotFound(url)
            shutil.copyfile(path, dest)
            return dest

        for attempt in range(1, self.retries + 1):
            self._logger.info('Downloading %s', url)
            try:
                with urlopen(url) as response, open(dest, 'wb') as f:
                    shutil.copyfileobj(response, f)
                return dest
            except HTTPError as e:
                if e.code in (404, 410):
                    raise _NotFound(url)
                error = e
            except (URLError, OSError) as e:
                error = e
            self._logger.warning('Downloading %s failed (%s), attempt %d of %d', url, error,
                                 attempt, self.retries)
            if attempt < self.retries:
                sleep(self.delay)
        raise FetchError('downloading {} failed: {}'.format(url, error))

    def checkout(self, repo, ref, directory):
        """Shallow clone *repo* at *ref* into *directory* and return the ref.

        An empty *ref* means the default branch of the remote. If it cannot be determined, the
        remote's HEAD is cloned and ``None`` returned.
        """
        if not ref:
            ref = self.default_branch(repo)
            if ref:
                self._logger.info('Default branch of %s is %s', repo, ref)
            else:
                self._logger.warning('Could not determine default branch of %s', repo)
        elif not self.ref_exists(repo, ref):
            raise FetchError('ref {} not found in {}'.format(ref, repo))

        cmd = ['git', 'clone', '-q', '--depth', '1']
        if ref:
            cmd += ['--branch', ref]
        try:
            self.host.run(cmd + [repo, directory])
        except CommandError as e:
            raise FetchError(str(e))
        return ref

    def default_branch(self, repo):
        try:
            out = self.host.output(['git', 'ls-remote', '--symref', repo, 'HEAD'])
        except CommandError:
            return None
        for line in out.splitlines():
            if line.startswith('ref:'):
                ref = line.split()[1]
                return ref[len('refs/heads/'):] if ref.startswith('refs/heads/') else ref
        return None

    def ref_exists(self, repo, ref):
        return any(self.host.call(['git', 'ls-remote', '--exit-code', kind, repo, ref]) == 0
                   for kind in ('--heads', '--tags'))

def extract(archive, directory):
    """Extract *archive* (zip or tarball) into *directory*."""
    name = archive.lower()
    os.makedirs(directory, exist_ok=True)
    try:
        if name.endswith('.zip'):
            with zipfile.ZipFile(archive) as z:
                z.extractall(directory)
        elif name.endswith(('.tar.gz', '.tgz', '.tar', '.tar.xz', '.tar.bz2')):
            with tarfile.open(archive) as t:
                t.extractall(directory, filter='data')
        else:
            raise FetchError('unknown archive type {}'.format(os.path.basename(archive)))
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise FetchError('broken archive {}: {}'.format(os.path.basename(archive), e))

def find_marker(root, marker):
    """Locate the payload inside the tree at *root*.

    *marker* holds either ``path``, a relative path that must exist below the payload directory, or
    ``pattern``, a regular expression the payload file name must match and the optional ``exclude``
    must not. The shallowest match wins. Returns the payload directory or file, or ``None``.
    """
    path = marker.get('path')
    pattern = re.compile(marker['pattern']) if 'pattern' in marker else None
    exclude = re.compile(marker['exclude']) if 'exclude' in marker else None

    level = [root]
    while level:
        for d in level:
            if path and os.path.isfile(os.path.join(d, path)):
                return d
            if pattern:
                for name in sorted(os.listdir(d)):
                    p = os.path.join(d, name)
                    if (os.path.isfile(p) and pattern.search(name) and
                            not (exclude and exclude.search(name))):
                        return p
        level = [os.path.join(d, n) for d in level for n in sorted(os.listdir(d))
                 if os.path.isdir(os.path.join(d, n)) and not os.path.islink(os.path.join(d, n))]
    return None

def describe_marker(marker):
    if 'path' in marker:
        return marker['path']
    return 'a file matching {}'.format(marker['pattern'])

class Deployer:
    """Fetches artifacts, installs them and renders their configuration.

    Payloads are staged in a temporary directory and only then moved into place, so a failed fetch
    leaves the current installation untouched.
    """

    def __init__(self, manager):
        self.manager = manager
        self.host = manager.host
        self.fetcher = manager.fetcher
        self._logger = logging.getLogger('selfhost')

    def deploy(self, state):
        """Deploy *state* and return the resulting state."""
        state = state.copy()
        self.manager.software.deploy(self, state)
        return state

    def check_version(self, version):
        pattern = self.manager.software.meta['version_pattern']
        if not version or version == UNKNOWN or (pattern and not re.match(pattern, version)):
            raise FetchError(
                'version {!r} does not match a known artifact naming scheme'.format(version))

    def resolve(self, kind, version):
        """Return the candidate URLs of the *kind* artifact for *version*."""
        meta = self.manager.software.meta
        self.check_version(version)
        return self.fetcher.candidates(meta['artifacts'].get(kind), version,
                                       meta['architectures'])

    @contextmanager
    def staging(self):
        d = tempfile.mkdtemp(prefix='selfhost-', dir=self.manager.config['tmp_path'] or None)
        try:
            yield d
        finally:
            shutil.rmtree(d, ignore_errors=True)

    def install(self, sources, marker, target, owner=None, mode=None):
        """Fetch the first available of *sources* and install its payload at *target*.

        A source is an URL, a local archive or a local directory.
        """
        with self.staging() as staging:
            if len(sources) == 1 and os.path.isdir(sources[0]):
                tree = sources[0]
            else:
                archive = self.fetcher.fetch(sources, staging)
                tree = os.path.join(staging, 'tree')
                extract(archive, tree)
            self._install_payload(tree, marker, target, owner, mode, ', '.join(sources))

    def install_checkout(self, repo, ref, marker, target, owner=None, build=None):
        """Clone *repo* at *ref* and install its payload at *target*.

        *build* is called with the checkout directory and returns the tree to search for the
        payload. Returns the checked out ref.
        """
        with self.staging() as staging:
            src = os.path.join(staging, 'src')
            ref = self.fetcher.checkout(repo, ref, src)
            tree = build(src) if build else src
            self._install_payload(tree, marker, target, owner, None, repo)
        return ref

    def _install_payload(self, tree, marker, target, owner, mode, source):
        payload = find_marker(tree, marker)
        if payload is None:
            raise FetchError('{} does not contain {}'.format(source, describe_marker(marker)))
        self._logger.debug('Found payload %s', payload)
        self.replace(payload, target, owner=owner, mode=mode)

    def replace(self, source, target, owner=None, mode=None):
        """Replace the host path *target* with *source*.

        The new content is copied next to the target first and then renamed into place.
        """
        path = self.host.path(target)
        parent = os.path.dirname(path)
        os.makedirs(parent, exist_ok=True)
        name = os.path.basename(path)
        tmp = os.path.join(parent, '.{}.new-{}'.format(name, randstr(8)))
        try:
            if os.path.isdir(source):
                shutil.copytree(source, tmp, symlinks=True)
            else:
                shutil.copyfile(source, tmp)
            if mode is not None:
                os.chmod(tmp, mode)
            if owner:
                self.host.chown(tmp, owner, recursive=os.path.isdir(tmp))
        except (OSError, CommandError):
            remove_path(tmp)
            raise

        if os.path.isdir(path) and not os.path.islink(path):
            old = os.path.join(parent, '.{}.old-{}'.format(name, randstr(8)))
            os.rename(path, old)
            os.rename(tmp, path)
            shutil.rmtree(old)
        else:
            os.replace(tmp, path)

    def write(self, target, content, mode=0o644, owner=None, group=None):
        path = self.host.path(target)
        write_atomic(path, content, mode=mode,
                     chown=(lambda p: self.host.chown(p, owner, group)) if owner else None)

    def remove(self, *targets):
        for target in targets:
            remove_path(self.host.path(target))

class Software:
    """Web app described by a YAML meta file in ``webapps/``.

    .. attribute:: id

    .. attribute:: meta
    """

    def __init__(self, manager, meta_path):
        self.manager = manager
        self.id = os.path.splitext(os.path.basename(meta_path))[0]
        self.meta = {
            'modes': [COMBINED],
            'default_mode': COMBINED,
            'sources': ['release'],
            'ask_server_name': False,
            'version_pattern': None,
            'packages': {},
            'apache_modules': [],
            'database': {'name': self.id, 'user': self.id},
            'account': None,
            'architectures': {},
            'artifacts': {},
            'markers': {}
        }
        self.meta.update(manager.load_meta(meta_path))
        self._logger = logging.getLogger('selfhost')

    @property
    def name(self):
        return self.meta.get('name', self.id)

    @property
    def modes(self):
        return self.meta['modes']

    def packages(self, mode):
        packages = self.meta['packages']
        return set(packages.get('base', [])) | set(packages.get(mode, []))

    def services(self, mode):
        raise NotImplementedError()

    def uses_frontend(self, mode):
        """Whether a static frontend is deployed separately in *mode*."""
        return False

    def evidence(self):
        """Whether anything of an installation exists on the host."""
        raise NotImplementedError()

    def reconstruct(self):
        """Reconstruct an :class:`InstallState` from on-disk configuration."""
        raise NotImplementedError()

    def validate(self, deployer, state):
        pass

    def deploy(self, deployer, state):
        raise NotImplementedError()

    def deploy_frontend(self, deployer, state):
        raise NotImplementedError()

    def has_site(self, mode):
        """Whether a web server site with a server name is configured in *mode*."""
        return False

    def configure_site(self, state):
        raise NotImplementedError()

    def retire(self, deployer, state, mode):
        """Remove what only *state*'s mode needs before switching to *mode*."""
        pass

    def remove(self, deployer, state):
        raise NotImplementedError()

    def summary(self, state):
        return []

class Vikunja(Software):
    """Vikunja: API binary with embedded or separately served frontend."""

    def services(self, mode):
        services = [Service(MariaDB.service), Service(self.meta['service'], owned=True)]
        if mode == SEPARATE:
            services.append(Service(Nginx.service))
        return services

    def frontend_dir(self, mode):
        return self.meta['frontend_dirs'].get(mode)

    def uses_frontend(self, mode):
        return self.frontend_dir(mode) is not None

    def evidence(self):
        host = self.manager.host
        return (os.path.isfile(host.path(self.meta['config'])) or
                os.path.isfile(host.path(self.meta['unit'])) or
                os.path.isfile(host.path(self.meta['binary'])) or
                bool(host.which(os.path.basename(self.meta['binary']))))

    def reconstruct(self):
        config = self.read_config()
        service = config.get('service') or {}
        database = config.get('database') or {}
        cors = config.get('cors') or {}

        if service.get('staticpath'):
            mode = SAME_ORIGIN_STATIC
        elif cors.get('enabled') is True:
            mode = SEPARATE
        else:
            mode = COMBINED

        public_url = service.get('publicurl') or None
        frontend_url = server_name = None
        if mode == SEPARATE:
            api = self.read_frontend_config().get('api') or ''
            if not public_url and api.startswith(('http://', 'https://')):
                public_url = re.sub(r'/api/v1/?$', '', api)
            server_name = read_server_name(self.manager.host.path(self.meta['nginx_site']),
                                           'server_name')
            if cors.get('alloworigins'):
                frontend_url = cors['alloworigins'][0]
            elif server_name:
                frontend_url = '{}://{}'.format(urlparse(public_url or '').scheme or 'https',
                                                server_name)
        frontend_url = frontend_url or public_url
        return InstallState(
            mode=mode,
            app_version=UNKNOWN,
            frontend_version=UNKNOWN if self.uses_frontend(mode) else None,
            public_url=public_url,
            frontend_url=frontend_url,
            db_name=database.get('database') or self.meta['database']['name'],
            db_user=database.get('user') or self.meta['database']['user'],
            db_secret=UNKNOWN,
            server_name=server_name or (urlparse(frontend_url).hostname if frontend_url else None))

    def read_frontend_config(self):
        path = self.manager.host.path(os.path.join(self.frontend_dir(SEPARATE), 'config.json'))
        try:
            with open(path) as f:
                config = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            raise StateError('{}: {}'.format(path, e))
        return config if isinstance(config, dict) else {}

    def read_config(self):
        path = self.manager.host.path(self.meta['config'])
        try:
            with open(path) as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise StateError('{}: {}'.format(self.meta['config'], e))

    def validate(self, deployer, state):
        deployer.check_version(state.app_version)
        if self.uses_frontend(state.mode) and state.source == 'release':
            deployer.check_version(state.frontend_version)

    def render_config(self, state):
        """Return the API configuration for *state*."""
        service = {
            'publicurl': state.public_url,
            'interface': self.meta['interface']
        }
        if state.mode == SAME_ORIGIN_STATIC:
            service['staticpath'] = self.frontend_dir(state.mode)

        password = state.db_secret
        if password in (None, UNKNOWN):
            # Keep whatever the current configuration uses
            password = (self.read_config().get('database') or {}).get('password')

        return {
            'service': service,
            'log': {'level': 'info'},
            'database': {
                'type': 'mysql',
                'host': '127.0.0.1:3306',
                'user': state.db_user,
                'password': password,
                'database': state.db_name
            },
            'files': {'basepath': os.path.join(self.meta['account']['home'], 'files')},
            'cors': {
                'enabled': state.mode == SEPARATE,
                'alloworigins': [origin(state.frontend_url or state.public_url)]
            }
        }

    def render_unit(self, state):
        account = self.meta['account']
        return _SYSTEMD_UNIT_TEMPLATE.format(
            name=self.name, mode=state.mode, user=account['user'], group=account['group'],
            binary=self.meta['binary'], home=account['home'], config=self.meta['config'])

    def render_site(self, state):
        return _NGINX_SITE_TEMPLATE.format(
            host=state.server_name or urlparse(state.frontend_url).hostname,
            root=self.frontend_dir(state.mode), port=self.meta['port'])

    def has_site(self, mode):
        return mode == SEPARATE

    def configure_site(self, state):
        with step('Configuring nginx site for {}'.format(state.server_name), DeployError):
            self.manager.nginx.configure(self.meta['nginx_site'], self.meta['nginx_site_link'],
                                         self.render_site(state))

    def render_frontend_config(self, state):
        api = '/api/v1'
        if state.mode == SEPARATE:
            api = state.public_url.rstrip('/') + api
        return json.dumps({'api': api}) + '\n'

    def deploy(self, deployer, state):
        meta = self.meta
        manager = self.manager
        account = meta['account']

        with step('Installing {} {} binary'.format(self.name, state.app_version), DeployError):
            deployer.install(deployer.resolve('backend', state.app_version),
                             meta['markers']['backend'], meta['binary'], mode=0o755)

        if self.uses_frontend(state.mode):
            self.deploy_frontend(deployer, state)
        else:
            state.frontend_version = None

        with step('Writing {}'.format(meta['config']), DeployError):
            config = yaml.safe_dump(self.render_config(state), default_flow_style=False,
                                    sort_keys=False)
            deployer.write(meta['config'], config, mode=0o640, owner='root',
                           group=account['group'])

        with step('Writing {}'.format(meta['unit']), DeployError):
            deployer.write(meta['unit'], self.render_unit(state))
            manager.systemd.daemon_reload()

        with step('Starting {}'.format(meta['service']), DeployError):
            manager.systemd.enable(meta['service'], now=True)
            # Pick up the new binary and configuration if it was running already
            manager.systemd.restart(meta['service'])

        if self.has_site(state.mode):
            self.configure_site(state)

    def deploy_frontend(self, deployer, state):
        meta = self.meta
        target = self.frontend_dir(state.mode)
        marker = meta['markers']['frontend']
        owner = meta['web_user']

        if state.source == 'git':
            repo, ref = urldefrag(state.source_ref or meta['frontend_repo'])
            with step('Building {} frontend from {}'.format(self.name, repo), DeployError):
                ref = deployer.install_checkout(repo, ref, marker, target, owner=owner,
                                                build=self._build_frontend)
            state.frontend_version = ref or UNKNOWN
        elif state.source == 'archive':
            with step('Installing {} frontend from {}'.format(self.name, state.source_ref),
                      DeployError):
                deployer.install([state.source_ref], marker, target, owner=owner)
            state.frontend_version = version_from_name(state.source_ref)
        else:
            with step('Installing {} frontend {}'.format(self.name, state.frontend_version),
                      DeployError):
                deployer.install(deployer.resolve('frontend', state.frontend_version), marker,
                                 target, owner=owner)

        with step('Writing frontend config.json', DeployError):
            deployer.write(os.path.join(target, 'config.json'),
                           self.render_frontend_config(state), owner=owner)

    def _build_frontend(self, src):
        host = self.manager.host
        self.manager.apt.install(self.meta['build_packages'])
        host.run(['corepack', 'enable'])
        host.run(['corepack', 'prepare', 'pnpm@latest', '--activate'])
        frontend = os.path.join(src, 'frontend')
        host.run(['pnpm', 'install'], cwd=frontend)
        host.run(['pnpm', 'run', 'build'], cwd=frontend)
        return os.path.join(frontend, 'dist')

    def retire(self, deployer, state, mode):
        old = self.frontend_dir(state.mode)
        if old and old != self.frontend_dir(mode):
            with step('Removing {}'.format(old), DeployError):
                deployer.remove(old)
        if state.mode == SEPARATE and mode != SEPARATE:
            with step('Removing nginx site', DeployError):
                self.manager.nginx.remove(self.meta['nginx_site'], self.meta['nginx_site_link'])

    def remove(self, deployer, state):
        meta = self.meta
        manager = self.manager
        host = manager.host

        if os.path.isfile(host.path(meta['unit'])):
            with step('Disabling {}'.format(meta['service']), DeployError):
                manager.systemd.disable(meta['service'], now=True)
                deployer.remove(meta['unit'])
                manager.systemd.daemon_reload()

        if os.path.lexists(host.path(meta['nginx_site'])):
            with step('Removing nginx site', DeployError):
                manager.nginx.remove(meta['nginx_site'], meta['nginx_site_link'])

        paths = [meta['binary'], os.path.dirname(meta['config']), meta['account']['home']]
        paths += list(meta['frontend_dirs'].values())
        with step('Removing {} files'.format(self.name), DeployError):
            deployer.remove(*paths)

    def summary(self, state):
        lines = [
            'API listens on http://127.0.0.1:{}'.format(self.meta['port']),
            'Public API URL: {}'.format(state.public_url)
        ]
        if state.mode == COMBINED:
            lines += [
                'Frontend URL: {} (embedded in the binary)'.format(state.public_url),
                'Proxy {} -> http://127.0.0.1:{}, one origin, no CORS'.format(
                    state.public_url, self.meta['port'])
            ]
        elif state.mode == SAME_ORIGIN_STATIC:
            lines += [
                'Frontend URL: {} (served from {})'.format(state.public_url,
                                                           self.frontend_dir(state.mode)),
                'Proxy {} -> http://127.0.0.1:{}, one origin, no CORS'.format(
                    state.public_url, self.meta['port'])
            ]
        else:
            lines += [
                'Frontend URL: {} (nginx serves {})'.format(state.frontend_url,
                                                            self.frontend_dir(state.mode)),
                'Proxy {} -> http://127.0.0.1:{}'.format(state.public_url, self.meta['port']),
                'Proxy {} -> http://<host>:80'.format(state.frontend_url),
                'CORS allows {}'.format(origin(state.frontend_url))
            ]
        return lines

class Leantime(Software):
    """Leantime: PHP app served by Apache."""

    def __init__(self, manager, meta_path):
        super().__init__(manager, meta_path)
        php = self.meta['php_version']
        packages = self.meta['packages']
        self.meta['packages'] = {k: [p.format(php=php) for p in v] for k, v in packages.items()}
        self.meta['php_ini'] = self.meta['php_ini'].format(php=php)

    @property
    def env_path(self):
        return os.path.join(self.meta['web_root'], 'config', '.env')

    def services(self, mode):
        return [Service(MariaDB.service), Service(Apache.service)]

    def evidence(self):
        host = self.manager.host
        return (os.path.isfile(host.path(self.meta['apache_site'])) or
                os.path.isdir(host.path(self.meta['web_root'])))

    def reconstruct(self):
        host = self.manager.host
        env = {}
        try:
            with open(host.path(self.env_path)) as f:
                env = parse_env(f.read())
        except FileNotFoundError:
            pass

        server_name = read_server_name(host.path(self.meta['apache_site']), 'ServerName')
        public_url = env.get('LEAN_APP_URL') or env.get('APP_URL') or None
        return InstallState(
            mode=COMBINED,
            app_version=UNKNOWN,
            public_url=public_url,
            frontend_url=public_url,
            db_name=(env.get('LEAN_DB_DATABASE') or env.get('DB_DATABASE') or
                     self.meta['database']['name']),
            db_user=env.get('LEAN_DB_USER') or env.get('DB_USERNAME') or
                    self.meta['database']['user'],
            db_secret=UNKNOWN,
            server_name=server_name,
            source='release')

    def validate(self, deployer, state):
        if state.source == 'release':
            deployer.check_version(state.app_version)
        elif state.source == 'archive' and not state.source_ref:
            raise ConfigurationError('archive URL must not be empty')

    def deploy(self, deployer, state):
        meta = self.meta
        manager = self.manager
        host = manager.host
        marker = meta['markers']['tree']
        web_root = meta['web_root']

        if state.source == 'git':
            repo, ref = urldefrag(state.source_ref or meta['repo'])
            with step('Cloning {}'.format(repo), DeployError):
                ref = deployer.install_checkout(repo, ref, marker, web_root)
            state.app_version = ref or UNKNOWN
        elif state.source == 'archive':
            with step('Installing {} from {}'.format(self.name, state.source_ref), DeployError):
                deployer.install([state.source_ref], marker, web_root)
            state.app_version = version_from_name(state.source_ref)
        else:
            with step('Installing {} {}'.format(self.name, state.app_version), DeployError):
                deployer.install(deployer.resolve('archive', state.app_version), marker,
                                 web_root)

        root = host.path(web_root)
        if (os.path.isfile(os.path.join(root, 'composer.json')) and
                not os.path.isdir(os.path.join(root, 'vendor'))):
            with step('Installing PHP dependencies', DeployError):
                host.run(['composer', 'install', '--no-dev', '--optimize-autoloader',
                          '--no-interaction'], cwd=root, env={'COMPOSER_ALLOW_SUPERUSER': '1'})

        with step('Setting file permissions', DeployError):
            self._fix_permissions()

        with step('Writing config/.env', DeployError):
            deployer.write(self.env_path, self.render_env(state), mode=0o640,
                           owner=meta['web_user'])

        with step('Writing PHP settings', DeployError):
            deployer.write(meta['php_ini'], _PHP_INI_TEMPLATE.format(name=self.name))

        self.configure_site(state)

    def render_env(self, state):
        """Return the ``config/.env`` of the installed tree updated for *state*."""
        host = self.manager.host
        text = ''
        for name in ['.env', 'sample.env']:
            path = host.path(os.path.join(self.meta['web_root'], 'config', name))
            if os.path.isfile(path):
                with open(path, newline='') as f:
                    text = f.read()
                break
        text = text.replace('\r\n', '\n')

        lean = {
            'LEAN_APP_URL': state.public_url,
            # The user was created for localhost
            'LEAN_DB_HOST': 'localhost',
            'LEAN_DB_PORT': '3306',
            'LEAN_DB_DATABASE': state.db_name,
            'LEAN_DB_USER': state.db_user,
            'LEAN_DB_PASSWORD': state.db_secret,
            'LEAN_ENV': 'production'
        }
        plain = {
            'APP_URL': state.public_url,
            'DB_HOST': '127.0.0.1',
            'DB_PORT': '3306',
            'DB_DATABASE': state.db_name,
            'DB_USERNAME': state.db_user,
            'DB_PASSWORD': state.db_secret
        }
        if state.db_secret in (None, UNKNOWN):
            del lean['LEAN_DB_PASSWORD']
            del plain['DB_PASSWORD']
        text = set_env(text, lean, quoted=True)
        return set_env(text, plain, quoted=False)

    def render_site(self, state):
        return _APACHE_SITE_TEMPLATE.format(
            host=state.server_name, public=os.path.join(self.meta['web_root'], 'public'),
            id=self.id)

    def has_site(self, mode):
        return True

    def configure_site(self, state):
        with step('Configuring Apache site for {}'.format(state.server_name), DeployError):
            self.manager.apache.configure(self.meta['apache_site'], self.render_site(state))

    def _fix_permissions(self):
        host = self.manager.host
        root = host.path(self.meta['web_root'])
        for d, dirs, files in os.walk(root):
            os.chmod(d, 0o755)
            for name in files:
                path = os.path.join(d, name)
                if not os.path.islink(path):
                    os.chmod(path, 0o644)
        for writable in self.meta['writable_dirs']:
            path = os.path.join(root, writable)
            os.makedirs(path, exist_ok=True)
            for d, dirs, files in os.walk(path):
                os.chmod(d, 0o775)
        host.chown(root, self.meta['web_user'], recursive=True)

    def remove(self, deployer, state):
        meta = self.meta
        if os.path.lexists(self.manager.host.path(meta['apache_site'])):
            with step('Removing Apache site', DeployError):
                self.manager.apache.remove(meta['apache_site'])
        with step('Removing {} files'.format(self.name), DeployError):
            deployer.remove(meta['web_root'], meta['php_ini'])

    def summary(self, state):
        return [
            'URL: {}'.format(state.public_url),
            'Apache serves {} on port 80'.format(state.server_name),
            'Proxy {} -> http://<host>:80'.format(state.public_url),
            'Finish the setup at {}/install'.format(state.public_url.rstrip('/'))
        ]

class Prober:
    """Finds out if and how an app is installed."""

    def __init__(self, manager):
        self.manager = manager
        self._logger = logging.getLogger('selfhost')

    def detect(self):
        """Return the :class:`InstallState` of the app, or ``None`` if it is not installed.

        If there is evidence of an installation but no state file, the state is reconstructed from
        the configuration on disk and stored. A state file without any installation is removed.
        """
        software = self.manager.software
        evidence = software.evidence()
        state = self.manager.load()

        if state and not evidence:
            self._logger.warning('Removing stale state of %s', software.name)
            self.manager.forget()
            return None
        if state or not evidence:
            return state

        self._logger.warning('Found existing %s installation, reconstructing state', software.name)
        state = software.reconstruct()
        self.manager.store(state)
        return state

class Provisioner:
    """Makes sure packages, service account and database exist."""

    def __init__(self, manager):
        self.manager = manager
        self._logger = logging.getLogger('selfhost')

    def ensure_baseline(self, mode, database):
        """Ensure everything *mode* needs is present, with the credentials of *database*.

        Every step is idempotent. The first failure raises a :exc:`ProvisionError`.
        """
        manager = self.manager
        software = manager.software

        with step('Installing system packages', ProvisionError):
            installed = manager.apt.install(software.packages(mode))
            if installed:
                self._logger.info('Installed %s', ' '.join(installed))
            if software.meta['apache_modules']:
                manager.apache.enable_modules(software.meta['apache_modules'])

        account = software.meta['account']
        if account:
            with step('Preparing service account {}'.format(account['user']), ProvisionError):
                self.ensure_account(account)

        with step('Preparing database {}'.format(database.name), ProvisionError):
            manager.systemd.enable(MariaDB.service, now=True)
            manager.mariadb.create(database)

    def ensure_account(self, account):
        host = self.manager.host
        user = account['user']
        if not host.user_exists(user):
            host.run(['useradd', '--system', '--user-group', '--home', account['home'],
                      '--shell', '/usr/sbin/nologin', user])
        for d in account.get('dirs', []):
            os.makedirs(host.path(d), exist_ok=True)
        host.chown(host.path(account['home']), user, account.get('group'), recursive=True)

    def remove_account(self):
        host = self.manager.host
        account = self.manager.software.meta['account']
        if account and host.user_exists(account['user']):
            with step('Removing service account {}'.format(account['user']), ProvisionError):
                host.run(['userdel', account['user']])

class Manager:
    """Lifecycle manager of one app on the host.

    The manager exclusively owns the app's :class:`InstallState`. It is either ``None``
    (uninstalled) or the state of the current installation.

    .. attribute:: config

       Configuration, see ``.selfhost.conf``.

    .. attribute:: software

       Managed :class:`Software`.

    .. attribute:: state
    """

    def __init__(self, software_id='vikunja', config={}, host=None, database=None):
        self.config = {
            'root': '/',
            'state_dir': '/var/lib/selfhost',
            'webapps_path': _WEBAPPS_PATH,
            'tmp_path': None,
            'fetch_retries': 3,
            'fetch_delay': 2,
            'mysql_socket': '/run/mysqld/mysqld.sock',
            'mysql_option_file': '/root/.my.cnf'
        }
        self.config.update(config)

        try:
            retries = int(self.config['fetch_retries'])
            if retries < 1:
                raise ValueError()
        except ValueError:
            raise ConfigurationError('fetch_retries')
        try:
            delay = float(self.config['fetch_delay'])
            if delay < 0:
                raise ValueError()
        except ValueError:
            raise ConfigurationError('fetch_delay')

        self.host = host or Host(self.config['root'])
        self._meta = {}
        self.software_types = {'vikunja': Vikunja, 'leantime': Leantime}

        meta_path = os.path.join(self.config['webapps_path'], software_id + '.yaml')
        if not os.path.isfile(meta_path):
            raise ConfigurationError('unknown software {}'.format(software_id))
        kind = self.load_meta(meta_path).get('kind')
        if kind not in self.software_types:
            raise ConfigurationError('unknown software kind {}'.format(kind))
        self.software = self.software_types[kind](self, meta_path)

        self.apt = Apt(self.host)
        self.systemd = Systemd(self.host)
        self.mariadb = database or MariaDB(self.host, self.config['mysql_socket'],
                                           self.config['mysql_option_file'])
        self.nginx = Nginx(self.host, self.systemd)
        self.apache = Apache(self.host, self.systemd)
        self.fetcher = Fetcher(self.host, retries, delay)
        self.prober = Prober(self)
        self.provisioner = Provisioner(self)
        self.deployer = Deployer(self)
        self.state = None
        self._logger = logging.getLogger('selfhost')

    def load_meta(self, path):
        """Return the software meta data in the YAML file at *path*."""
        if path not in self._meta:
            try:
                with open(path) as f:
                    self._meta[path] = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError('{}: {}'.format(path, e))
        return self._meta[path]

    @property
    def state_path(self):
        return self.host.path(os.path.join(self.config['state_dir'], self.software.id + '.state'))

    def detect(self):
        self.state = self.prober.detect()
        return self.state

    def load(self):
        try:
            with open(self.state_path) as f:
                return InstallState.loads(f.read())
        except FileNotFoundError:
            return None

    def store(self, state):
        write_atomic(self.state_path, state.dumps(), mode=0o600)

    def forget(self):
        remove_path(self.state_path)

    def _require_installed(self):
        if not self.state:
            raise StateError('{} is not installed'.format(self.software.name))

    def services(self):
        self._require_installed()
        return self.software.services(self.state.mode)

    def status(self):
        """Return if each service of the current mode is active."""
        return {s.name: self.systemd.is_active(s.name) for s in self.services()}

    def start(self):
        self.systemd.start(*[s.name for s in self.services()])

    def stop(self):
        self.systemd.stop(*reversed([s.name for s in self.services()]))

    def restart(self):
        self.systemd.restart(*[s.name for s in self.services()])

    def prepare(self, desired):
        """Validate the *desired* state and fill in defaults.

        Nothing on the host is touched. A missing database secret is generated.
        """
        software = self.software
        if desired.mode not in software.modes:
            raise ConfigurationError('{} does not support mode {}'.format(software.name,
                                                                          desired.mode))
        if desired.source not in SOURCES:
            raise ConfigurationError('unknown source {}'.format(desired.source))
        check_url(desired.public_url, 'public URL')

        changes = {}
        if desired.mode == SEPARATE:
            check_url(desired.frontend_url, 'frontend URL')
        else:
            changes['frontend_url'] = desired.public_url
        if not desired.db_name:
            changes['db_name'] = software.meta['database']['name']
        if not desired.db_user:
            changes['db_user'] = software.meta['database']['user']
        if not desired.db_secret:
            changes['db_secret'] = randstr(20)
        if not desired.server_name:
            url = desired.frontend_url if desired.mode == SEPARATE else desired.public_url
            changes['server_name'] = urlparse(url).hostname
        if desired.server_name:
            check_server_name(desired.server_name)
        state = desired.copy(**changes)

        check_identifier(state.db_name, 'database name')
        check_identifier(state.db_user, 'database user')
        software.validate(self.deployer, state)
        return state

    def install(self, desired):
        """Install the app as *desired* and return the resulting state."""
        if self.state:
            raise StateError('{} is already installed'.format(self.software.name))
        state = self.prepare(desired)
        return self._apply(state)

    def _apply(self, state):
        self._logger.info('Installing %s (%s)', self.software.name, state.mode)
        self.provisioner.ensure_baseline(state.mode, state.database)
        state = self.deployer.deploy(state)
        self.store(state)
        self.state = state
        return state

    def reinstall(self, desired):
        """Replace the current installation with a fresh one as *desired*."""
        self._require_installed()
        state = self.prepare(desired)
        self.uninstall()
        return self._apply(state)

    def switch_mode(self, mode, frontend_url=None):
        """Switch the current installation to *mode*, keeping the database."""
        self._require_installed()
        software = self.software
        current = self.state
        if mode not in software.modes:
            raise StateError('{} does not support mode {}'.format(software.name, mode))
        if mode == current.mode:
            raise StateError('{} already runs in mode {}'.format(software.name, mode))

        new = current.copy(mode=mode, frontend_url=frontend_url or current.frontend_url,
                           server_name=None)
        if mode != SEPARATE:
            new.frontend_url = current.public_url
        elif not frontend_url and current.mode != SEPARATE:
            new.frontend_url = None
        if new.app_version in (None, UNKNOWN):
            new.app_version = software.meta['default_version']
        if software.uses_frontend(mode):
            if new.frontend_version in (None, UNKNOWN) or not software.uses_frontend(current.mode):
                new.frontend_version = software.meta.get('default_frontend_version')
                new.source = 'release'
        else:
            new.frontend_version = None
        new = self.prepare(new)

        self._logger.info('Switching %s from %s to %s', software.name, current.mode, mode)
        self.provisioner.ensure_baseline(mode, new.database)
        new = self.deployer.deploy(new)
        software.retire(self.deployer, current, mode)
        self.store(new)
        self.state = new
        return new

    def update_frontend(self, source, ref=None, version=None):
        """Deploy a new frontend from *source* (see :data:`SOURCES`)."""
        self._require_installed()
        software = self.software
        if not software.uses_frontend(self.state.mode):
            raise StateError('mode {} has no separate frontend'.format(self.state.mode))
        if source not in SOURCES:
            raise ConfigurationError('unknown source {}'.format(source))
        if source == 'archive' and not ref:
            raise ConfigurationError('archive must not be empty')

        new = self.state.copy(source=source, source_ref=ref,
                              frontend_version=version if source == 'release' else None)
        if source == 'release':
            self.deployer.check_version(version)
        software.deploy_frontend(self.deployer, new)
        self.store(new)
        self.state = new
        return new

    def set_server_name(self, name):
        """Serve the current installation's site under the host *name*."""
        self._require_installed()
        software = self.software
        if not software.has_site(self.state.mode):
            raise StateError('mode {} has no web server site'.format(self.state.mode))
        check_server_name(name)

        new = self.state.copy(server_name=name)
        software.configure_site(new)
        self.store(new)
        self.state = new
        return new

    def uninstall(self):
        """Remove everything of the current installation, database included."""
        self._require_installed()
        state = self.state
        self._logger.info('Uninstalling %s', self.software.name)

        self.software.remove(self.deployer, state)
        if self.apt.is_installed('mariadb-server'):
            with step('Dropping database {}'.format(state.db_name), ProvisionError):
                # The server may have been stopped from the menu
                self.systemd.enable(MariaDB.service, now=True)
                self.mariadb.delete(state.database)
        else:
            self._logger.info('MariaDB is not installed, skipping database removal')
        self.provisioner.remove_account()
        self.forget()
        self.state = None

class Menu:
    """Interactive operator menu over a :class:`Manager`."""

    def __init__(self, manager, input=input, output=print, getpass=getpass):
        self.manager = manager
        self.input = input
        self.output = output
        self.getpass = getpass

    def run(self):
        """Run one round of the menu and return the exit status."""
        state = self.manager.detect()
        if not state:
            self.output('Welcome to the {} installer.'.format(self.manager.software.name))
            self.install()
            return 0
        return self.menu()

    def menu(self):
        manager = self.manager
        software = manager.software
        state = manager.state

        self.output('')
        self.output('=== {} manager ==='.format(software.name))
        self.output('Mode: {} | URL: {} | Frontend: {}'.format(
            state.mode, state.public_url or UNKNOWN, state.frontend_url or UNKNOWN))
        versions = 'Version: {}'.format(state.app_version or UNKNOWN)
        if state.frontend_version:
            versions += ' | Frontend version: {}'.format(state.frontend_version)
        self.output(versions)
        self.output('')

        actions = [
            ('Show status', self.status),
            ('Start services', manager.start),
            ('Stop services', manager.stop),
            ('Restart services', manager.restart)
        ]
        if len(software.modes) > 1:
            actions.append(('Switch deployment mode', self.switch_mode))
        if software.uses_frontend(state.mode):
            actions.append(('Update frontend', self.update_frontend))
        if software.has_site(state.mode):
            actions.append(('Set server name', self.set_server_name))
        actions += [
            ('Reinstall (replaces everything)', self.reinstall),
            ('Uninstall completely', self.uninstall)
        ]
        for i, (label, _) in enumerate(actions, 1):
            self.output('  {}) {}'.format(i, label))
        self.output('  0) Exit')

        choice = self.input('Choice [0-{}]: '.format(len(actions))).strip()
        if choice == '0':
            return 0
        if not choice.isdigit() or not 1 <= int(choice) <= len(actions):
            self.output('Invalid choice.')
            return 1
        label, action = actions[int(choice) - 1]
        action()
        return 0

    def ask(self, prompt, default=None):
        suffix = ' [{}]'.format(default) if default else ''
        return self.input('{}{}: '.format(prompt, suffix)).strip() or default

    def choose(self, prompt, options, descriptions, default):
        """Let the operator pick one of *options* by number."""
        for i, option in enumerate(options, 1):
            self.output('  {}) {:<19} {}'.format(i, option, descriptions.get(option, '')))
        choice = self.ask(prompt, str(options.index(default) + 1))
        try:
            i = int(choice)
            if not 1 <= i <= len(options):
                raise ValueError()
        except ValueError:
            raise ConfigurationError('invalid choice {!r}'.format(choice))
        return options[i - 1]

    def confirm(self, question):
        answer = self.input("{} Type 'yes' to continue: ".format(question)).strip()
        if answer != 'yes':
            self.output('Aborted.')
            return False
        return True

    def ask_install(self):
        """Ask for everything an installation needs and return the desired state."""
        software = self.manager.software
        meta = software.meta

        mode = meta['default_mode']
        if len(software.modes) > 1:
            mode = self.choose('Deployment mode', software.modes, MODE_DESCRIPTIONS, mode)

        source = 'release'
        if len(meta['sources']) > 1:
            source = self.choose('Source', meta['sources'], SOURCE_DESCRIPTIONS, 'release')

        state = InstallState(mode=mode, source=source)
        if source == 'release':
            state.app_version = self.ask('{} version'.format(software.name),
                                         meta['default_version'])
        elif source == 'git':
            ref = self.ask('Git branch or tag (empty for the default branch)')
            state.source_ref = '{}#{}'.format(meta['repo'], ref) if ref else meta['repo']
        else:
            state.source_ref = self.ask('Archive URL')
            if not state.source_ref:
                raise ConfigurationError('archive URL must not be empty')
        if software.uses_frontend(mode):
            state.frontend_version = self.ask('Frontend version',
                                              meta.get('default_frontend_version'))

        state.public_url = self.ask('Public URL (e.g. https://todo.example.org)')
        if not state.public_url:
            raise ConfigurationError('public URL must not be empty')
        if mode == SEPARATE:
            state.frontend_url = self.ask('Frontend URL (e.g. https://app.example.org)')
            if not state.frontend_url:
                raise ConfigurationError('frontend URL must not be empty')
        if meta['ask_server_name']:
            state.server_name = self.ask('Server name', urlparse(state.public_url).hostname)

        state.db_name = self.ask('Database name', meta['database']['name'])
        state.db_user = self.ask('Database user', meta['database']['user'])
        state.db_secret = self.getpass('Database password (empty to generate): ') or None
        return state

    def install(self, reinstall=False):
        manager = self.manager
        desired = self.ask_install()
        generated = not desired.db_secret
        desired = manager.prepare(desired)
        if generated:
            self.output('Generated database password: {}'.format(desired.db_secret))
        state = manager.reinstall(desired) if reinstall else manager.install(desired)
        self.output('')
        self.output('{} is ready.'.format(manager.software.name))
        for line in manager.software.summary(state):
            self.output('  ' + line)

    def status(self):
        status = self.manager.status()
        for name, active in status.items():
            self.output('{}: {}'.format(name, 'active' if active else 'inactive'))
        self.manager.systemd.status(*status)

    def switch_mode(self):
        manager = self.manager
        modes = [m for m in manager.software.modes if m != manager.state.mode]
        mode = self.choose('New mode', modes, MODE_DESCRIPTIONS, modes[0])
        frontend_url = None
        if mode == SEPARATE:
            frontend_url = self.ask('Frontend URL', manager.state.frontend_url
                                    if manager.state.mode == SEPARATE else None)
            if not frontend_url:
                raise ConfigurationError('frontend URL must not be empty')
        manager.switch_mode(mode, frontend_url=frontend_url)
        self.output('Now running in mode {}.'.format(mode))

    def update_frontend(self):
        manager = self.manager
        meta = manager.software.meta
        source = self.choose('Source', list(SOURCES), {
            'release': 'release by version',
            'archive': 'zip URL, local zip or dist/ directory',
            'git': 'build from git with pnpm'
        }, 'release')
        ref = version = None
        if source == 'release':
            version = self.ask('Frontend version', meta.get('default_frontend_version'))
        elif source == 'archive':
            ref = self.ask('Zip URL, zip file or dist/ directory')
        else:
            repo = self.ask('Git repository', meta['frontend_repo'])
            branch = self.ask('Branch or tag (empty for the default branch)')
            ref = '{}#{}'.format(repo, branch) if branch else repo
        manager.update_frontend(source, ref=ref, version=version)
        self.output('Frontend updated.')

    def set_server_name(self):
        name = self.ask('Server name', self.manager.state.server_name)
        self.manager.set_server_name(name)
        self.output('Site now served as {}.'.format(name))

    def reinstall(self):
        if self.confirm('This replaces the installation and deletes its database.'):
            self.install(reinstall=True)

    def uninstall(self):
        if self.confirm('This deletes {} completely, database included.'.format(
                self.manager.software.name)):
            self.manager.uninstall()
            self.output('{} removed.'.format(self.manager.software.name))

# utilities

def shell_quote(value):
    """Quote *value* for a shell, always with single quotes."""
    return "'" + value.replace("'", "'\"'\"'") + "'"

def parse_env(text):
    """Parse ``KEY=value`` and ``KEY = 'value'`` lines of a ``.env`` file."""
    env = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        value = value.strip()
        if len(value) >= 2 and value[0] in '\'"' and value[-1] == value[0]:
            value = re.sub(r'\\(.)', r'\1', value[1:-1])
        env[key.strip()] = value
    return env

_PLAIN_ENV_VALUE = re.compile(r'^[A-Za-z0-9_./:@+-]*$')

def env_value(value, quoted):
    if quoted:
        return "'{}'".format(value.replace('\\', '\\\\').replace("'", "\\'"))
    if _PLAIN_ENV_VALUE.match(value):
        return value
    return '"{}"'.format(value.replace('\\', '\\\\').replace('"', '\\"'))

def set_env(text, values, quoted=True):
    """Set *values* in the ``.env`` *text*, replacing existing keys in place.

    *quoted* values are written as ``KEY = 'value'``, the others as ``KEY=value``.
    """
    lines = text.splitlines()
    for key, value in values.items():
        line = ('{} = {}' if quoted else '{}={}').format(key, env_value(str(value), quoted))
        pattern = re.compile(r'^{}\s*='.format(re.escape(key)))
        for i, l in enumerate(lines):
            if pattern.match(l):
                lines[i] = line
                break
        else:
            lines.append(line)
    return '\n'.join(lines) + '\n'

def check_url(url, what):
    if not url:
        raise ConfigurationError('{} must not be empty'.format(what))
    tokens = urlparse(url)
    if tokens.scheme not in ('http', 'https') or not tokens.hostname:
        raise ConfigurationError('{} {!r} is not an http(s) URL'.format(what, url))

def check_identifier(value, what):
    if not value or not _IDENTIFIER.match(value):
        raise ConfigurationError('{} {!r} may only contain letters, digits and _'.format(what,
                                                                                         value))

def read_server_name(path, directive):
    """Return the first *directive* value of the web server site at *path*, if any."""
    try:
        with open(path) as f:
            match = re.search(r'^\s*{}\s+([^\s;]+)'.format(directive), f.read(), re.MULTILINE)
    except FileNotFoundError:
        return None
    return match.group(1) if match else None

_SERVER_NAME = re.compile(r'^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?'
                          r'(\.[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?)*$')

def check_server_name(value):
    if not value or not _SERVER_NAME.match(value):
        raise ConfigurationError('server name {!r} is not a host name'.format(value))

def origin(url):
    """Return the origin of *url*, without path or trailing slash."""
    tokens = urlparse(url)
    return '{}://{}'.format(tokens.scheme, tokens.netloc)

def version_from_name(name):
    match = re.search(r'v?\d+\.\d+\.\d+', os.path.basename(urlparse(name).path))
    return match.group(0) if match else UNKNOWN

def write_atomic(path, content, mode=0o644, chown=None):
    """Write *content* to *path* through a temporary sibling file."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp = '{}.new-{}'.format(path, randstr(8))
    try:
        with open(tmp, 'w') as f:
            f.write(content)
        os.chmod(tmp, mode)
        if chown:
            chown(tmp)
        os.replace(tmp, path)
    except (OSError, CommandError):
        remove_path(tmp)
        raise

def remove_path(path):
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)

def randstr(length=16, charset=ascii_letters + digits):
    random = SystemRandom()
    return ''.join(random.choice(charset) for i in range(length))

# main

def main(args=None):
    from configparser import ConfigParser

    parser = argparse.ArgumentParser(description='Install and manage a self-hosted web app.')
    parser.add_argument('-v', '--verbose', action='store_true')
    parser.add_argument('software', nargs='?', default='vikunja',
                        help='App to manage, a meta file name in webapps/.')
    args = parser.parse_args(args)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level)
    logger = logging.getLogger('selfhost')

    config = ConfigParser()
    config.read(['/etc/selfhost.conf', '.selfhost.conf'])
    config = dict(config['selfhost']) if config.has_section('selfhost') else {}

    try:
        manager = Manager(args.software, config=config)
        if manager.host.root == '/' and os.geteuid() != 0:
            raise ConfigurationError('selfhost must be run as root')
        return Menu(manager).run()
    except Error as e:
        logger.error('%s', e)
        return 1
    except (EOFError, KeyboardInterrupt):
        logger.error('Aborted')
        return 1

if __name__ == '__main__':
    sys.exit(main())
