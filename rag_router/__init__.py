"""Ядро маршрутизации запросов по индексам провайдера.

Содержит:
- config: dataclass-конфиги провайдера, индексов, ожидания готовности, генерации и хранилища
- provider: тонкий асинхронный адаптер над vector stores / files / responses API
- readiness: опрос индекса до готовности (pending → polling → ready | degraded | failed)
- master: единый мастер-индекс по всем активным документам и его синхронизация
- scoped: content-addressed временные индексы под явный набор документов
- router: выбор индекса(ов) под запрос
- generator / responses: генерация ответа и строгий разбор ответа провайдера
- lifecycle: активация, деактивация и удаление документов
- service: submit_query и сборка всех компонентов
- storage: реестр документов, журнал диалогов, настройки (память или SQLite)
"""
