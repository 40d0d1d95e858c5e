import pytest

from rxportal.db.models import Resource, Tag
from rxportal.tags import generate_slug


@pytest.fixture
def seeded_tags(db_session):
    tags = [
        Tag(name='Peptides', slug='peptides', usage_count=5),
        Tag(name='Weight Loss', slug='weight-loss', usage_count=9),
        Tag(name='Aging', slug='aging', usage_count=5),
    ]
    db_session.add_all(tags)
    db_session.commit()
    return tags


def test_admin_routes_require_admin_role(api_client, provider_headers):
    assert api_client.get('/api/admin/tags').status_code == 401
    resp = api_client.get('/api/admin/tags', headers=provider_headers)
    assert resp.status_code == 403
    assert resp.json()['error']['message'] == 'Insufficient privileges'


def test_list_orders_by_usage_then_name(api_client, admin_headers, seeded_tags):
    resp = api_client.get('/api/admin/tags', params={'page': 1, 'limit': 2}, headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert [tag['name'] for tag in body['tags']] == ['Weight Loss', 'Aging']
    assert body['total'] == 3
    assert body['page'] == 1
    assert body['limit'] == 2
    assert body['totalPages'] == 2

    second = api_client.get('/api/admin/tags', params={'page': 2, 'limit': 2}, headers=admin_headers)
    assert [tag['name'] for tag in second.json()['tags']] == ['Peptides']


def test_list_search_is_case_insensitive(api_client, admin_headers, seeded_tags):
    body = api_client.get('/api/admin/tags', params={'search': 'PEP'}, headers=admin_headers).json()
    assert [tag['name'] for tag in body['tags']] == ['Peptides']
    assert body['total'] == 1
    assert body['limit'] == 10


def test_create_tag(api_client, admin_headers):
    resp = api_client.post('/api/admin/tags', json={'name': '  Gut <b>Health</b>! '}, headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is True
    assert body['tag']['name'] == 'Gut Health!'
    assert body['tag']['slug'] == 'gut-health'
    assert body['tag']['usage_count'] == 0


@pytest.mark.parametrize(
    'name, message',
    [
        ('', 'Tag name is required'),
        ('   ', 'Tag name is required'),
        ('x' * 51, 'Tag name must be 50 characters or less'),
        ('Peptides', 'A tag with this name already exists'),
    ],
)
def test_create_tag_validation(api_client, admin_headers, seeded_tags, name, message):
    resp = api_client.post('/api/admin/tags', json={'name': name}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()['error']['message'] == message


def test_update_tag(api_client, admin_headers, seeded_tags):
    tag_id = seeded_tags[0].id

    resp = api_client.put(f'/api/admin/tags/{tag_id}', json={'name': 'Peptide Therapy'}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()['tag']['slug'] == 'peptide-therapy'

    same = api_client.put(f'/api/admin/tags/{tag_id}', json={'name': 'Peptide Therapy'}, headers=admin_headers)
    assert same.status_code == 200

    clash = api_client.put(f'/api/admin/tags/{tag_id}', json={'name': 'Aging'}, headers=admin_headers)
    assert clash.status_code == 400

    missing = api_client.put('/api/admin/tags/nope', json={'name': 'Other'}, headers=admin_headers)
    assert missing.status_code == 404


def test_delete_tag_strips_resources(api_client, admin_headers, seeded_tags, db_session):
    db_session.add_all(
        [
            Resource(title='A', tags=['Peptides', 'Aging']),
            Resource(title='B', tags=['Peptides']),
            Resource(title='C', tags=['Aging']),
        ]
    )
    db_session.commit()
    tag_id = seeded_tags[0].id

    resp = api_client.delete(f'/api/admin/tags/{tag_id}', headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json() == {
        'success': True,
        'message': 'Tag deleted successfully',
        'resourcesUpdated': 2,
    }
    db_session.expire_all()
    remaining = {r.title: r.tags for r in db_session.query(Resource).all()}
    assert remaining == {'A': ['Aging'], 'B': [], 'C': ['Aging']}
    assert db_session.get(Tag, tag_id) is None

    again = api_client.delete(f'/api/admin/tags/{tag_id}', headers=admin_headers)
    assert again.status_code == 404


@pytest.mark.parametrize(
    'name, slug',
    [
        ('Weight Loss', 'weight-loss'),
        ('GLP-1  Basics', 'glp-1-basics'),
        ('Men’s Health!!', 'mens-health'),
        ('a -- b', 'a-b'),
    ],
)
def test_generate_slug(name, slug):
    assert generate_slug(name) == slug
