#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import logging
import json
import sys

import mlsync

logger = mlsync.logger


def cmd_mirror_common_opts(sp):
    sp.add_argument('-a', '--archive', dest='archive', required=True,
                    help='Git directory of the mailing list archive')
    sp.add_argument('-g', '--gitdir', default=None,
                    help='Operate on the notes in this git tree instead of current dir')
    sp.add_argument('-b', '--branch', default=None,
                    help='Mail archive branch to walk (default: mlsync.archive-branch)')


def _get_mirror(cmdargs, config):
    import mlsync.notes
    import mlsync.github
    import mlsync.mirror
    notes = mlsync.notes.GitNotes(cmdargs.gitdir, config)
    client = mlsync.github.GitHubClient(config)
    return mlsync.mirror.MailArchiveMirror.from_notes(config, notes, cmdargs.archive, client,
                                                      branch=cmdargs.branch)


def cmd_mirror(cmdargs):
    config = mlsync.get_main_config(cmdargs.gitdir)
    mirror = _get_mirror(cmdargs, config)
    pr_filter = None
    if cmdargs.prs:
        wanted = set(cmdargs.prs)

        def pr_filter(pr_url):
            return pr_url in wanted

    if mirror.process_mails(pr_filter=pr_filter):
        logger.info('Mirrored up to %s', mirror.state['latest_revision'])
    else:
        logger.info('Nothing new in %s', mirror.branch)


def cmd_init_tip(cmdargs):
    config = mlsync.get_main_config(cmdargs.gitdir)
    mirror = _get_mirror(cmdargs, config)
    tip = mirror.init_tip(cmdargs.rev)
    logger.info('Checkpoint set to %s', tip)


def cmd_parse(cmdargs):
    if cmdargs.msgfile and cmdargs.msgfile != '-':
        with open(cmdargs.msgfile, 'rb') as fh:
            raw = fh.read()
    else:
        raw = sys.stdin.buffer.read()
    lmsg = mlsync.parse_mail(raw)
    sys.stdout.write(json.dumps(lmsg.to_dict(), indent=2, ensure_ascii=False) + '\n')


def cmd_show_note(cmdargs):
    import mlsync.notes
    config = mlsync.get_main_config(cmdargs.gitdir)
    notes = mlsync.notes.GitNotes(cmdargs.gitdir, config, notes_ref=cmdargs.ref)
    value = notes.get_string(cmdargs.key)
    if value is None:
        logger.critical('No note for %s in %s', cmdargs.key, notes.notes_ref)
        sys.exit(1)
    sys.stdout.write(value + '\n')


def cmd_lookup_commit(cmdargs):
    import mlsync.mapping
    commit = mlsync.mapping.get_upstream_commit(cmdargs.gitdir, cmdargs.msgid)
    if commit is None:
        logger.critical('%s has not been integrated (yet?)', cmdargs.msgid)
        sys.exit(1)
    sys.stdout.write(commit + '\n')


def cmd_update_mail_to_commit(cmdargs):
    import mlsync.mapping
    config = mlsync.get_main_config(cmdargs.gitdir)
    mapping = mlsync.mapping.MailCommitMapping(cmdargs.gitdir, config)
    if cmdargs.fetch:
        mapping.commit2mail.update()
    changed = mapping.update()
    if cmdargs.push and changed:
        mapping.mail2commit.push()


def cmd_track_branch(cmdargs):
    import mlsync.notes
    import mlsync.series
    config = mlsync.get_main_config(cmdargs.gitdir)
    notes = mlsync.notes.GitNotes(cmdargs.gitdir, config)
    mlsync.series.set_upstream_branch(notes, cmdargs.pr_url, cmdargs.branch)
    logger.info('%s is known upstream as %s', cmdargs.pr_url, cmdargs.branch)


def cmd_close_pr(cmdargs):
    import mlsync.notes
    import mlsync.series
    config = mlsync.get_main_config(cmdargs.gitdir)
    notes = mlsync.notes.GitNotes(cmdargs.gitdir, config)
    if not mlsync.series.close_pull_request(notes, cmdargs.pr_url):
        logger.info('%s was not tracked as open', cmdargs.pr_url)


def setup_parser() -> argparse.ArgumentParser:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        prog='mlsync',
        description='Mirror mailing list discussions into GitHub pull requests',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=mlsync.__VERSION__)
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Add more debugging info to the output')
    parser.add_argument('-q', '--quiet', action='store_true', default=False,
                        help='Output critical information only')

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    # mlsync mirror
    sp_mirror = subparsers.add_parser('mirror', help='Mirror new mail since the last checkpoint')
    cmd_mirror_common_opts(sp_mirror)
    sp_mirror.add_argument('--pr', dest='prs', action='append', default=None, metavar='URL',
                           help='Only mirror replies to this pull request (may be repeated)')
    sp_mirror.set_defaults(func=cmd_mirror)

    # mlsync init-tip
    sp_init = subparsers.add_parser('init-tip', help='Set the mail archive checkpoint')
    cmd_mirror_common_opts(sp_init)
    sp_init.add_argument('rev', nargs='?', default=None,
                         help='Archive revision to start after (default: tip of the branch)')
    sp_init.set_defaults(func=cmd_init_tip)

    # mlsync parse
    sp_parse = subparsers.add_parser('parse', help='Parse one raw message and show it as JSON')
    sp_parse.add_argument('msgfile', nargs='?', default=None,
                          help='File with the raw message (default: stdin)')
    sp_parse.set_defaults(func=cmd_parse)

    # mlsync show-note
    sp_show = subparsers.add_parser('show-note', help='Show the value stored for a key')
    sp_show.add_argument('-g', '--gitdir', default=None,
                         help='Operate on this git tree instead of current dir')
    sp_show.add_argument('-r', '--ref', default=None,
                         help='Notes ref to look in (default: mlsync.notes-ref)')
    sp_show.add_argument('key', help='Message-ID, pull request URL or other key')
    sp_show.set_defaults(func=cmd_show_note)

    # mlsync lookup-commit
    sp_lookup = subparsers.add_parser('lookup-commit', help='Find the upstream commit for a Message-ID')
    sp_lookup.add_argument('-g', '--gitdir', default=None,
                           help='Operate on this git tree instead of current dir')
    sp_lookup.add_argument('msgid', help='Message-ID of the patch')
    sp_lookup.set_defaults(func=cmd_lookup_commit)

    # mlsync update-mail-to-commit
    sp_m2c = subparsers.add_parser('update-mail-to-commit',
                                   help='Fold new commit-to-mail notes into the mail-to-commit mapping')
    sp_m2c.add_argument('-g', '--gitdir', default=None,
                        help='Operate on this git tree instead of current dir')
    sp_m2c.add_argument('--fetch', action='store_true', default=False,
                        help='Fast-forward commit-to-mail notes from mlsync.notes-remote first')
    sp_m2c.add_argument('--push', action='store_true', default=False,
                        help='Push the updated mapping to mlsync.notes-remote')
    sp_m2c.set_defaults(func=cmd_update_mail_to_commit)

    # mlsync track-branch
    sp_track = subparsers.add_parser('track-branch', help='Record the upstream topic branch of a pull request')
    sp_track.add_argument('-g', '--gitdir', default=None,
                          help='Operate on this git tree instead of current dir')
    sp_track.add_argument('pr_url', help='Pull request URL')
    sp_track.add_argument('branch', help='Topic branch name used in status mails')
    sp_track.set_defaults(func=cmd_track_branch)

    # mlsync close-pr
    sp_close = subparsers.add_parser('close-pr', help='Stop relaying status updates to a pull request')
    sp_close.add_argument('-g', '--gitdir', default=None,
                          help='Operate on this git tree instead of current dir')
    sp_close.add_argument('pr_url', help='Pull request URL')
    sp_close.set_defaults(func=cmd_close_pr)

    return parser


def cmd():
    parser = setup_parser()
    cmdargs = parser.parse_args()
    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if cmdargs.quiet:
        ch.setLevel(logging.CRITICAL)
    elif cmdargs.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.INFO)

    logger.addHandler(ch)

    if 'func' not in cmdargs:
        parser.print_help()
        sys.exit(1)

    try:
        cmdargs.func(cmdargs)
    except mlsync.MlsyncError as ex:
        logger.critical('CRITICAL: %s', ex)
        sys.exit(1)


if __name__ == '__main__':
    cmd()
