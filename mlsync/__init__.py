# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import subprocess
import logging
import re
import os
import copy
import fnmatch
import email
import email.utils
import email.header
import email.message

from typing import Optional, Tuple, List, Union

__VERSION__ = '0.1.0'

logger = logging.getLogger('mlsync')

# Presence of these characters requires quoting of the name in the header
# adapted from email._parseaddr
qspecials = re.compile(r'[()<>@,:;.\"\[\]]')

MSGID_RE = re.compile(r'<([^>]+)>')
COMMENT_RE = re.compile(r'\([^)]*\)')
ADDR_RE = re.compile(r'<\S+@\S+>')

DEFAULT_CONFIG = {
    # Where the per-message and per-PR metadata lives
    'notes-ref': 'refs/notes/mlsync',
    # Remote to fetch/push the notes ref from/to (None means local only)
    'notes-remote': None,
    # How many times to try pushing notes when somebody else pushed first
    'notes-push-attempts': '5',
    # Key under which the mirror checkpoint is stored
    'state-key': 'mlsync-config:mirror-state',
    # Branch of the mail archive we walk
    'archive-branch': 'master',
    # Used to build links to archived messages
    'mailrepo-url': 'https://lore.kernel.org/git/',
    'mailrepo-name': 'Git',
    'reply-to-this-url': 'https://github.com/gitgitgadget/gitgitgadget/wiki/ReplyToThis',
    'github-api-url': 'https://api.github.com',
    # Status mails from this sender are matched against open pull requests
    'whats-cooking-from': 'Junio C Hamano <gitster@pobox.com>',
    'upstream-branch-url': 'https://github.com/gitgitgadget/git/commits/',
    # Last commit-to-mail revision folded into refs/notes/mail-to-commit
    'mapping-state-key': 'mlsync-config:mail-to-commit-state',
    # Falls back to $GITHUB_TOKEN
    'github-token': None,
}


class MlsyncError(Exception):
    pass


class MalformedMessage(MlsyncError):
    pass


class NoteStoreError(MlsyncError):
    pass


class NotInitialized(NoteStoreError):
    pass


class UnknownRef(NoteStoreError):
    pass


class ConcurrentWriteConflict(NoteStoreError):
    pass


class TransientExternalFailure(MlsyncError):
    pass


class FatalEnumerationFailure(MlsyncError):
    pass


class MailMessage:
    msgid: Optional[str]
    headers: List[Tuple[str, str]]
    references: List[str]

    def __init__(self, raw: Union[bytes, str]):
        if isinstance(raw, str):
            raw = raw.encode(errors='surrogateescape')

        self.headers, bbody = MailMessage.split_raw(raw)
        # Let the email module do the MIME and transfer-encoding work, but
        # feed it without the archive's From_ line
        hblock = '\n'.join(f'{hname}: {hval}' for hname, hval in self.headers)
        self.msg = email.message_from_bytes(hblock.encode() + b'\n\n' + bbody)

        self.msgid = MailMessage.get_clean_msgid(self.msg)
        self.references = MailMessage.get_references(self.msg)
        self.subject = MailMessage.clean_header(self.get_header('Subject'))

        self.fromname = None
        self.fromemail = None
        self.sender = None
        fromdata = email.utils.getaddresses([MailMessage.clean_header(x) for x in self.get_all_headers('From')])
        if fromdata and fromdata[0][1]:
            self.fromname, self.fromemail = fromdata[0]
            if not len(self.fromname.strip()):
                self.fromname = self.fromemail
            self.sender = format_addrs([(self.fromname, self.fromemail)])

        # Keep the folded values verbatim, we need them when composing follow-ups
        self.raw_to = self.get_header('To')
        self.raw_cc = self.get_header('Cc')
        self.to = MailMessage.get_addr_list(self.get_all_headers('To'))
        self.cc = MailMessage.get_addr_list(self.get_all_headers('Cc'))

        self.charset = 'utf-8'
        self.body = None
        self._load_body()
        if self.body is None:
            logger.debug('  No plain or patch parts found in %s', self.msgid)
            self.body = ''

    def _load_body(self) -> None:
        mcharset = self.msg.get_content_charset()
        if not mcharset:
            mcharset = 'utf-8'
        self.charset = mcharset

        # walk until we find the first text/plain part
        for part in self.msg.walk():
            if part.is_multipart():
                continue
            cte = part.get_content_type()
            if cte.find('/plain') < 0 and cte.find('/x-patch') < 0:
                continue
            # This honours Content-Transfer-Encoding case-insensitively and
            # hands back the payload as-is for anything it does not know
            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            pcharset = part.get_content_charset()
            if not pcharset:
                pcharset = mcharset
            try:
                self.body = payload.decode(pcharset)
                self.charset = pcharset
            except (LookupError, UnicodeDecodeError):
                # Whatever, we'll use utf-8 and hope for the best
                self.body = payload.decode('utf-8', errors='replace')
                self.charset = 'utf-8'
            return

    def get_header(self, hname: str) -> Optional[str]:
        for name, value in self.headers:
            if name.lower() == hname.lower():
                return value
        return None

    def get_all_headers(self, hname: str) -> List[str]:
        return [value for name, value in self.headers if name.lower() == hname.lower()]

    def to_dict(self) -> dict:
        return {
            'msgid': self.msgid,
            'from': self.sender,
            'to': self.to,
            'cc': self.cc,
            'raw_to': self.raw_to,
            'raw_cc': self.raw_cc,
            'subject': self.subject,
            'references': self.references,
            'headers': [list(x) for x in self.headers],
            'body': self.body,
        }

    def __repr__(self):
        out = list()
        out.append('msgid: %s' % self.msgid)
        out.append('  subject: %s' % self.subject)
        out.append('  from: %s' % self.sender)
        out.append('  to: %s' % ', '.join(self.to))
        out.append('  cc: %s' % ', '.join(self.cc))
        out.append('  references: %s' % ', '.join(self.references))
        out.append('  --- begin body ---')
        for line in self.body.split('\n'):
            out.append('  |%s' % line)
        out.append('  --- end body ---')

        return '\n'.join(out)

    @staticmethod
    def split_raw(raw: bytes) -> Tuple[List[Tuple[str, str]], bytes]:
        data = raw.replace(b'\r\n', b'\n')
        # The archive format may prefix each message with a From_ line
        if data.startswith(b'From '):
            eol = data.find(b'\n')
            data = data[eol + 1:] if eol >= 0 else b''
        if data.startswith(b'\n'):
            raise MalformedMessage('Message has an empty header block')
        chunks = data.split(b'\n\n', 1)
        if len(chunks) < 2:
            raise MalformedMessage('No blank line terminating the header block')
        hblock, bbody = chunks

        headers = list()
        for line in hblock.decode(errors='replace').split('\n'):
            if line[:1] in (' ', '\t'):
                if not headers:
                    raise MalformedMessage('Continuation line without a header: %s' % line)
                hname, hval = headers[-1]
                headers[-1] = (hname, hval + '\n' + line)
                continue
            hname, sep, hval = line.partition(':')
            if not sep or not hname or re.search(r'\s', hname):
                raise MalformedMessage('Not a header line: %s' % line)
            headers.append((hname, hval.lstrip(' \t')))

        return headers, bbody

    @staticmethod
    def decode_words(hdrval: str) -> str:
        chunks = list()
        for hstr, hcs in email.header.decode_header(hdrval):
            if isinstance(hstr, str):
                chunks.append(hstr)
                continue
            try:
                chunks.append(hstr.decode(hcs or 'utf-8', errors='replace'))
            except LookupError:
                # unknown charset
                chunks.append(hstr.decode('utf-8', errors='replace'))
        return ''.join(chunks)

    @staticmethod
    def clean_header(hdrval: Optional[str]) -> str:
        """Decode RFC 2047 words and unfold, one line of text comes out."""
        if hdrval is None:
            return ''

        if '=?' not in hdrval:
            decoded = hdrval
        elif ADDR_RE.search(hdrval):
            # Names are decoded one address at a time, so that a comma or
            # a bracket hidden inside an encoded word stays inside the name
            return format_addrs(email.utils.getaddresses([hdrval]))
        else:
            decoded = MailMessage.decode_words(hdrval)

        return ' '.join(decoded.split())

    @staticmethod
    def get_addr_list(hvals: List[str]) -> List[str]:
        addrs = list()
        for hval in hvals:
            for pair in email.utils.getaddresses([hval]):
                if not pair[1]:
                    continue
                addrs.append(format_addrs([pair]))
        return addrs

    @staticmethod
    def get_clean_msgid(msg: email.message.Message, header='Message-Id') -> Optional[str]:
        msgid = None
        raw = msg.get(header)
        if raw:
            matches = MSGID_RE.search(MailMessage.clean_header(str(raw)))
            if matches:
                msgid = matches.groups()[0]
        return msgid

    @staticmethod
    def get_references(msg: email.message.Message) -> List[str]:
        # In-Reply-To entries go first, then References, duplicates and all
        refs = list()
        for hname in ('In-Reply-To', 'References'):
            for raw in msg.get_all(hname, []):
                hval = COMMENT_RE.sub('', MailMessage.clean_header(str(raw)))
                refs += MSGID_RE.findall(hval)
        return refs


def parse_mail(raw: Union[bytes, str]) -> MailMessage:
    """Parse one archived message without touching any state."""
    return MailMessage(raw)


def format_addrs(pairs, clean=True):
    addrs = list()
    for pair in pairs:
        if not pair[0] or pair[0] == pair[1]:
            addrs.append(pair[1])
            continue
        if clean:
            # Remove any quoted-printable header junk from the name
            pair = (MailMessage.clean_header(pair[0]), pair[1])
        if not pair[0].startswith('"') and qspecials.search(pair[0]):
            quoted = email.utils.quote(pair[0])
            addrs.append(f'"{quoted}" <{pair[1]}>')
            continue
        addrs.append(f'{pair[0]} <{pair[1]}>')
    return ', '.join(addrs)


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None,
                 rundir: Optional[str] = None) -> Tuple[int, bytes, bytes]:
    if rundir:
        logger.debug('Running %s in %s', ' '.join(cmdargs), rundir)
    else:
        logger.debug('Running %s', ' '.join(cmdargs))
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stdin=subprocess.PIPE, stderr=subprocess.PIPE,
                          cwd=rundir)
    (output, error) = sp.communicate(input=stdin)

    return sp.returncode, output, error


def git_run_command(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                    logstderr: bool = False, decode: bool = True) -> Tuple[int, Union[str, bytes]]:
    """Run git against a worktree or a bare repository.

    Whatever git prints on stderr is logged at debug level.  With logstderr
    it is also added to the returned output, but only when git failed, so
    that warnings never end up mixed into parseable output.
    """
    cmdargs = ['git', '--no-pager']
    if gitdir:
        dotgit = os.path.join(gitdir, '.git')
        cmdargs += ['--git-dir', dotgit if os.path.exists(dotgit) else gitdir]
    cmdargs += args

    ecode, out, err = _run_command(cmdargs, stdin=stdin)

    err = err.strip()
    if err:
        logger.debug('Stderr: %s', err.decode(errors='replace'))
        if logstderr and ecode > 0:
            out += b'\n' + err

    if decode:
        out = out.decode(errors='replace')
    return ecode, out


def git_get_command_lines(gitdir: Optional[str], args: list) -> List[str]:
    ecode, out = git_run_command(gitdir, args)
    lines = list()
    if out:
        for line in out.split('\n'):
            if line == '':
                continue
            lines.append(line)

    return lines


def git_revparse_obj(gitdir: Optional[str], gitobj: str) -> Optional[str]:
    ecode, out = git_run_command(gitdir, ['rev-parse', '--verify', '-q', gitobj])
    if ecode > 0:
        return None
    return out.strip()


def git_commit_exists(gitdir, commit_id):
    gitargs = ['cat-file', '-e', f'{commit_id}^{{commit}}']
    ecode, out = git_run_command(gitdir, gitargs)
    return ecode == 0


def git_get_toplevel(path: Optional[str] = None) -> Optional[str]:
    topdir = None
    if path is not None and not os.path.isdir(path):
        return topdir
    # Are we in a git tree and if so, what is our toplevel?
    ecode, out, err = _run_command(['git', 'rev-parse', '--show-toplevel'], rundir=path)
    lines = out.decode(errors='replace').splitlines()
    if ecode == 0 and len(lines) == 1:
        topdir = lines[0]
    return topdir


def get_config_from_git(regexp: str, defaults: Optional[dict] = None, source: Optional[str] = None,
                        gitdir: Optional[str] = None) -> dict:
    config = dict(defaults) if defaults else dict()
    args = ['config']
    if source:
        args += ['--file', source]
    ecode, out = git_run_command(gitdir, args + ['-z', '--get-regexp', regexp])
    # with -z every entry is "section.key\nvalue\0", a bare boolean has no "\nvalue"
    for entry in out.split('\x00'):
        if not entry:
            continue
        key, sep, value = entry.partition('\n')
        if not sep:
            value = 'true'
        config[key.rsplit('.', 1)[-1].lower()] = value

    return config


def get_main_config(gitdir: Optional[str] = None) -> dict:
    """Build the configuration dict for one invocation.

    Defaults come from DEFAULT_CONFIG, then from a .mlsync-config file at the
    toplevel of the worktree (if there is one), and finally from the mlsync.*
    keys of git-config.  The result is handed to constructors explicitly.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    topdir = git_get_toplevel(gitdir)
    # Credentials never come from a checked-in file
    wtglobs = ['notes-*', 'state-key', 'archive-*', 'mailrepo-*', 'reply-*', 'github-api-url',
               'whats-cooking-*', 'upstream-*', 'mapping-*']
    if topdir:
        wtcfg = os.path.join(topdir, '.mlsync-config')
        if os.access(wtcfg, os.R_OK):
            logger.debug('Loading worktree configs from %s', wtcfg)
            wtconfig = get_config_from_git(r'mlsync\..*', source=wtcfg)
            for key, val in wtconfig.items():
                for wtglob in wtglobs:
                    if fnmatch.fnmatch(key, wtglob):
                        logger.debug('wtcfg: %s=%s', key, val)
                        config[key] = val
                        break
    config = get_config_from_git(r'mlsync\..*', defaults=config, gitdir=gitdir)
    if not config.get('github-token'):
        config['github-token'] = os.environ.get('GITHUB_TOKEN')

    return config
