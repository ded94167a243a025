# utils/chat.py
from sqlalchemy import or_

from models import ChatMessage, ChatThreadState

ALL = 'ALL'
MESSAGE_LIMIT = 500
THREAD_SCAN_LIMIT = 800


def user_room(user_id):
    return f"user:{user_id}"


def role_room(role):
    return f"role:{role}"


def thread_key_for(message, user_id):
    """Key of the conversation ``message`` belongs to, seen by ``user_id``."""
    if message.to_user_id:
        other_id = message.to_user_id if message.from_user_id == user_id else message.from_user_id
        return f"USER:{other_id}"
    if message.to_role:
        return f"ROLE:{message.to_role}"
    return f"ROLE:{ALL}"


def delivery_rooms(message):
    """Socket rooms a freshly stored chat message is pushed to."""
    if message.to_user_id:
        return [user_room(message.to_user_id), user_room(message.from_user_id)]
    if message.to_role and message.to_role != ALL:
        return [role_room(message.to_role), user_room(message.from_user_id)]
    return [role_room(ALL)]


def visible_messages(user, limit):
    """The ``limit`` newest messages ``user`` may see, oldest first."""
    newest = ChatMessage.query.filter(
        or_(
            ChatMessage.to_role == ALL,
            ChatMessage.to_role == user.role,
            ChatMessage.to_user_id == user.id,
            ChatMessage.from_user_id == user.id,
        )
    ).order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit).all()
    return newest[::-1]


def thread_states(user_id):
    return {s.thread_key: s for s in ChatThreadState.query.filter_by(user_id=user_id).all()}


def _hidden(message, state):
    return bool(state and state.deleted_at and message.created_at <= state.deleted_at)


def messages_for(user, thread_key=None):
    states = thread_states(user.id)
    result = []
    for message in visible_messages(user, MESSAGE_LIMIT):
        key = thread_key_for(message, user.id)
        if thread_key and key != thread_key:
            continue
        if _hidden(message, states.get(key)):
            continue
        data = message.to_dict()
        data['thread_key'] = key
        result.append(data)
    return result


def threads_for(user):
    """Fold the user's visible messages into one entry per conversation."""
    states = thread_states(user.id)
    threads = {}
    for message in visible_messages(user, THREAD_SCAN_LIMIT):
        key = thread_key_for(message, user.id)
        state = states.get(key)
        if _hidden(message, state):
            continue
        existing = threads.get(key)
        if existing and message.created_at < existing['_last_at']:
            continue

        thread_type = 'ROLE'
        label = message.to_role or ALL
        role = None
        thread_user = None
        if key.startswith('USER:'):
            thread_type = 'USER'
            other = message.from_user if message.from_user_id != user.id else message.to_user
            thread_user = other.summary() if other else None
            label = (other.full_name or other.username) if other else key.split(':', 1)[1]
        elif key == f"ROLE:{ALL}":
            thread_type = 'ALL'
            label = 'Global'
        else:
            role = key.split(':', 1)[1]

        threads[key] = {
            'thread_key': key,
            'type': thread_type,
            'label': label,
            'role': role,
            'user': thread_user,
            'archived': state.archived if state else False,
            'deleted_at': state.deleted_at.isoformat() if state and state.deleted_at else None,
            'last_message': {
                'id': message.id,
                'message': message.message,
                'created_at': message.created_at.isoformat(),
                'from_user_id': message.from_user_id,
            },
            '_last_at': message.created_at,
        }

    ordered = sorted(threads.values(), key=lambda t: t['_last_at'], reverse=True)
    for thread in ordered:
        thread.pop('_last_at')
    return ordered
