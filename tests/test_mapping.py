import pytest  # noqa
import mlsync
import mlsync.notes
import mlsync.mapping

C2M = '--ref=refs/notes/commit-to-mail'


def test_update_mail_to_commit(gitdir, notesrepo, config):
    c1 = notesrepo.commit({'a.txt': 'a\n'})
    c2 = notesrepo.commit({'a.txt': 'b\n'})
    mapping = mlsync.mapping.MailCommitMapping(gitdir, config)

    notesrepo.git(['notes', C2M, 'add', '-m', '<p1@x>', c1])
    notesrepo.git(['notes', C2M, 'add', '-m', '<p2@x>', '-m', '<p2b@x>', c2])
    assert mapping.update() == 3
    assert mapping.get_commit('p1@x') == c1
    assert mapping.get_commit('p2@x') == c2
    assert mapping.get_commit('p2b@x') == c2
    # nothing new
    assert mapping.update() == 0

    # a rewritten note drops the old message-ids
    notesrepo.git(['notes', C2M, 'add', '-f', '-m', '<p1.v2@x>', c1])
    assert mapping.update() == 2
    assert mapping.get_commit('p1@x') is None
    assert mapping.get_commit('p1.v2@x') == c1

    notesrepo.git(['notes', C2M, 'remove', c2])
    assert mapping.update() == 2
    assert mapping.get_commit('p2@x') is None
    assert mapping.get_commit('p2b@x') is None
    assert mlsync.mapping.get_upstream_commit(gitdir, 'p1.v2@x') == c1


def test_mail_moves_to_another_commit(gitdir, notesrepo, config):
    c1 = notesrepo.commit({'a.txt': 'a\n'})
    c2 = notesrepo.commit({'a.txt': 'b\n'})
    mapping = mlsync.mapping.MailCommitMapping(gitdir, config)
    notesrepo.git(['notes', C2M, 'add', '-m', '<p1@x>', c1])
    mapping.update()

    # picked up again as a different commit, then dropped from the old one
    notesrepo.git(['notes', C2M, 'add', '-m', '<p1@x>', c2])
    notesrepo.git(['notes', C2M, 'remove', c1])
    mapping.update()
    assert mapping.get_commit('p1@x') == c2
    state = mapping.mail2commit.get(config['mapping-state-key'])
    assert state['latest_revision'] == mlsync.git_revparse_obj(gitdir, mlsync.notes.COMMIT_TO_MAIL_REF)


def test_update_without_commit_notes(gitdir, config):
    mapping = mlsync.mapping.MailCommitMapping(gitdir, config)
    with pytest.raises(mlsync.NoteStoreError):
        mapping.update()


def test_upstream_commit(gitdir):
    mail2commit = mlsync.notes.GitNotes(gitdir, notes_ref=mlsync.notes.MAIL_TO_COMMIT_REF)
    mail2commit.set_string('patch@x', 'feeddeadbeef', force_create=True)
    assert mlsync.mapping.get_upstream_commit(gitdir, 'patch@x') == 'feeddeadbeef'
    assert mlsync.mapping.get_upstream_commit(gitdir, 'other@x') is None
